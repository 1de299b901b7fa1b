"""接続名からslugを生成する"""

import re
from typing import Iterable

_NON_SLUG = re.compile(r"[^a-z0-9]+")

DEFAULT_SLUG = "connection"


def slugify(name: str) -> str:
    """表示名をslugへ変換する（英数字とハイフンのみ）"""
    slug = _NON_SLUG.sub("-", name.strip().lower()).strip("-")
    return slug or DEFAULT_SLUG


def unique_slug(name: str, existing: Iterable[str]) -> str:
    """既存のslugと衝突しないslugを返す"""
    taken = set(existing)
    base = slugify(name)
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"
