"""SQLAlchemy column types shared by the indexer tables.

On-chain amounts are ``uint256`` and overflow every native SQL integer type,
so they are stored losslessly as decimal text and surfaced as Python ``int``.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

__all__ = ["Uint256"]


class Uint256(TypeDecorator):
    """Unsigned 256-bit integer persisted as a base-10 string."""

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Optional[str]:
        if value is None:
            return None
        as_int = int(value)
        if as_int < 0:
            raise ValueError(f"uint256 column cannot hold negative value {as_int}")
        return str(as_int)

    def process_result_value(self, value: Optional[str], dialect) -> Optional[int]:
        if value is None:
            return None
        return int(value)
