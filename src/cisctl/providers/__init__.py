"""Provider implementations for cisctl."""
from __future__ import annotations

from .ssm import DEFAULT_DOCUMENT_NAME, SsmError, SsmProvider

__all__ = ["DEFAULT_DOCUMENT_NAME", "SsmError", "SsmProvider"]
