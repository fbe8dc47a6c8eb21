"""Verdict models produced by the response validator."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class Classification(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"


class Strictness(str, Enum):
    LENIENT = "lenient"
    STRICT = "strict"


class Mismatch(BaseModel):
    """One divergence between expected and actual, addressed by ``path``."""

    model_config = ConfigDict(frozen=True)

    path: str
    expected: Any = None
    actual: Any = None
    message: str = ""


class Verdict(BaseModel):
    """Judgment for one execution record.

    ``error`` means no comparison could be performed; ``fail`` means the
    comparison ran and diverged.
    """

    model_config = ConfigDict(frozen=True)

    scenario_id: str
    operation_id: str
    category: str
    classification: Classification
    mismatches: tuple[Mismatch, ...] = ()
    reason: Optional[str] = None
    terminal_state: str
    attempts: int = 0
    status_code: Optional[int] = None
    duration_ms: float = 0.0


class ValidationSettings(BaseModel):
    strictness: Strictness = Field(default=Strictness.LENIENT)
