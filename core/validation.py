"""
core/validation.py -- Password strength policy.

The policy is an explicitly constructed, immutable value. The composition
root builds one from Settings and passes it to whoever needs it (the API
layer stores it on app.state). There is no module-level validator instance.

Request *shape* validation (required fields, email syntax, lengths) is
handled by the pydantic models in api/models.py. This module only covers the
strength rules that depend on configuration.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    max_length: int = 72  # bcrypt ignores bytes past 72
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    def problems(self, password: str) -> list[str]:
        """Return human-readable reasons the password is rejected (empty list = acceptable)."""
        found: list[str] = []
        if len(password) < self.min_length:
            found.append(f"must be at least {self.min_length} characters")
        if len(password.encode("utf-8")) > self.max_length:
            found.append(f"must be at most {self.max_length} bytes")
        if self.require_upper and not _UPPER.search(password):
            found.append("must contain an uppercase letter")
        if self.require_lower and not _LOWER.search(password):
            found.append("must contain a lowercase letter")
        if self.require_digit and not _DIGIT.search(password):
            found.append("must contain a digit")
        if self.require_special and not _SPECIAL.search(password):
            found.append("must contain a special character")
        return found

    def is_valid(self, password: str) -> bool:
        return not self.problems(password)
