"""对象键与访问 URL 的公共拼接规则，所有适配器共用。"""

from __future__ import annotations

import posixpath
import re
from typing import Mapping, Optional
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

_MULTI_SLASH = re.compile(r"/{2,}")


def relative_to_mount(virtual_path: str, mount_path: Optional[str]) -> str:
    """把 ``/pics/a.jpg`` 这样的完整目录树路径转换为相对挂载点 ``/pics`` 的路径。"""
    path = virtual_path or ""
    mount = (mount_path or "").rstrip("/")
    if not mount or not path.startswith("/"):
        return path
    if path == mount:
        return ""
    if path.startswith(mount + "/"):
        return path[len(mount):]
    return path


def build_object_key(base_path: Optional[str], virtual_path: str, mount_path: Optional[str] = None) -> str:
    """拼接后端对象键。

    规则：去掉 base_path 首尾的 "/"、去掉虚拟路径开头的 "/"，两者之间恰好一个 "/"；
    合并重复分隔符且结果不以 "/" 开头。结果为空时退回虚拟路径的文件名部分。
    """
    relative = relative_to_mount(virtual_path, mount_path)
    base = (base_path or "").strip().strip("/")
    rel = (relative or "").lstrip("/")
    key = f"{base}/{rel}" if base else rel
    key = _MULTI_SLASH.sub("/", key).lstrip("/")
    if not key:
        key = posixpath.basename((virtual_path or "").rstrip("/"))
    return key


def build_object_prefix(base_path: Optional[str], virtual_path: str, mount_path: Optional[str] = None) -> str:
    """目录前缀：与对象键规则一致，但不做文件名回退，非空时以 "/" 结尾。"""
    relative = relative_to_mount(virtual_path, mount_path)
    base = (base_path or "").strip().strip("/")
    rel = (relative or "").strip("/")
    prefix = f"{base}/{rel}" if base and rel else (base or rel)
    prefix = _MULTI_SLASH.sub("/", prefix).strip("/")
    return f"{prefix}/" if prefix else ""


def ensure_scheme(domain: str) -> str:
    """CDN 域名没有协议头时补上 https://，并去掉结尾的 "/"。"""
    domain = (domain or "").strip().rstrip("/")
    if not domain:
        return ""
    if "://" not in domain:
        domain = f"https://{domain}"
    return domain


def join_url(base: str, key: str) -> str:
    return f"{base.rstrip('/')}/{quote(key.lstrip('/'), safe='/')}"


def merge_query(url: str, params: Optional[Mapping[str, str]] = None, directive: str = "") -> str:
    """向 URL 合并查询参数，已有的同名参数保持不变；``directive`` 作为无值指令追加。"""
    parts = urlsplit(url)
    existing = parse_qsl(parts.query, keep_blank_values=True)
    existing_keys = {k for k, _ in existing}
    pieces = [parts.query] if parts.query else []

    extra = [(k, v) for k, v in (params or {}).items() if k not in existing_keys and v is not None]
    if extra:
        pieces.append(urlencode(extra))
    if directive and directive not in existing_keys:
        pieces.append(directive)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(pieces), parts.fragment))


def apply_style(url: str, separator: str, style: str) -> str:
    """在路径末尾追加 ``<separator><style>`` 形式的图片样式，查询串保持原样。"""
    if not separator or not style:
        return url
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, f"{parts.path}{separator}{style}", parts.query, parts.fragment))
