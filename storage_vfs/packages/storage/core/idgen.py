"""公共 ID 编解码：对外暴露的 ID 由数据库主键与实体类型共同编码而成。"""

from __future__ import annotations

from functools import lru_cache

from sqids import Sqids

from .config import get_settings
from .enums import EntityTypeEnum
from .exceptions import InvalidPublicID


class PublicIdCodec:
    """基于 sqids 的双向编码器，编码内容固定为 ``[数据库 ID, 实体类型]``。"""

    def __init__(self, alphabet: str, min_length: int = 4) -> None:
        self._sqids = Sqids(alphabet=alphabet, min_length=min_length)

    def encode(self, db_id: int, entity_type: EntityTypeEnum) -> str:
        return self._sqids.encode([int(db_id), int(entity_type)])

    def decode(self, public_id: str, entity_type: EntityTypeEnum) -> int:
        """解码公共 ID，实体类型不匹配或格式错误时抛出 ``InvalidPublicID``。"""
        if not public_id:
            raise InvalidPublicID()
        numbers = self._sqids.decode(public_id)
        if len(numbers) != 2 or numbers[1] != int(entity_type):
            raise InvalidPublicID()
        # sqids 对同一组数字存在多种解码形式，只接受规范编码
        if self._sqids.encode(numbers) != public_id:
            raise InvalidPublicID()
        return numbers[0]


@lru_cache
def get_public_id_codec() -> PublicIdCodec:
    settings = get_settings()
    return PublicIdCodec(settings.public_id_alphabet, settings.public_id_min_length)
