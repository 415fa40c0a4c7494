"""Database bootstrapping utilities."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from storage_vfs.packages.storage.core.config import get_settings
from storage_vfs.packages.storage.core.constants import (
    DEFAULT_ARTICLE_IMAGE_BASE_PATH,
    DEFAULT_ARTICLE_IMAGE_POLICY_NAME,
    DEFAULT_ARTICLE_IMAGE_VIRTUAL_PATH,
    DEFAULT_COMMENT_IMAGE_BASE_PATH,
    DEFAULT_COMMENT_IMAGE_POLICY_NAME,
    DEFAULT_COMMENT_IMAGE_VIRTUAL_PATH,
    DEFAULT_POLICY_BASE_PATH,
    DEFAULT_POLICY_NAME,
    ROOT_POLICY_ID,
    ROOT_VIRTUAL_PATH,
)
from storage_vfs.packages.storage.core.enums import PolicyFlagEnum, PolicyTypeEnum
from storage_vfs.packages.storage.crud.storage_policy import storage_policy_crud
from storage_vfs.packages.storage.db import session as db_session
from storage_vfs.packages.storage.models import Base
from storage_vfs.packages.storage.models.storage_policy import StoragePolicy
from storage_vfs.packages.storage.services.vfs_service import vfs_service

logger = logging.getLogger(__name__)

_FLAGGED_DEFAULTS = (
    (
        PolicyFlagEnum.ARTICLE_IMAGE.value,
        DEFAULT_ARTICLE_IMAGE_POLICY_NAME,
        DEFAULT_ARTICLE_IMAGE_BASE_PATH,
        DEFAULT_ARTICLE_IMAGE_VIRTUAL_PATH,
    ),
    (
        PolicyFlagEnum.COMMENT_IMAGE.value,
        DEFAULT_COMMENT_IMAGE_POLICY_NAME,
        DEFAULT_COMMENT_IMAGE_BASE_PATH,
        DEFAULT_COMMENT_IMAGE_VIRTUAL_PATH,
    ),
)


def init_db() -> None:
    """Create all tables and make sure the built-in storage policies exist."""
    Base.metadata.create_all(bind=db_session.engine)

    session = db_session.SessionLocal()
    try:
        owner_id = get_settings().default_owner_id
        _seed_root_policy(session, owner_id)
        _seed_flagged_policies(session, owner_id)
        session.commit()
    except Exception:  # pragma: no cover - initialization failures should surface
        session.rollback()
        logger.exception("Failed to seed default storage policies during database initialization")
        raise
    finally:
        session.close()


def _seed_root_policy(db: Session, owner_id: int) -> None:
    """根策略必须是第一条记录，挂载在目录树根节点。"""
    root_node = vfs_service.get_or_create_root(db, owner_id)
    policy = storage_policy_crud.get(db, ROOT_POLICY_ID)
    if policy is None:
        policy = StoragePolicy(
            name=DEFAULT_POLICY_NAME,
            type=PolicyTypeEnum.LOCAL.value,
            is_private=False,
            max_size=0,
            base_path=DEFAULT_POLICY_BASE_PATH,
            virtual_path=ROOT_VIRTUAL_PATH,
            settings={},
        )
        db.add(policy)
        db.flush()
        if policy.id != ROOT_POLICY_ID:
            logger.warning("Root storage policy was created with id %s instead of %s", policy.id, ROOT_POLICY_ID)
        logger.info("Seeded root storage policy %s", policy.id)
    if policy.node_id != root_node.id:
        policy.node_id = root_node.id
        db.add(policy)
        db.flush()


def _seed_flagged_policies(db: Session, owner_id: int) -> None:
    for flag, name, base_path, virtual_path in _FLAGGED_DEFAULTS:
        if storage_policy_crud.get_by_flag(db, flag) is not None:
            continue
        if storage_policy_crud.get_by_virtual_path(db, virtual_path) is not None:
            # 挂载路径已被其他策略占用时不再补种
            logger.warning("Skipped seeding %s policy: %s is already mounted", flag, virtual_path)
            continue
        node = vfs_service.ensure_path(db, owner_id, virtual_path)
        policy = StoragePolicy(
            name=name,
            type=PolicyTypeEnum.LOCAL.value,
            is_private=False,
            max_size=0,
            base_path=base_path,
            virtual_path=virtual_path,
            flag=flag,
            node_id=node.id,
            settings={},
        )
        db.add(policy)
        db.flush()
        logger.info("Seeded %s storage policy %s at %s", flag, policy.id, virtual_path)
