from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import DEFAULT_DEPARTMENT, DEFAULT_VALIDITY_MONTHS

log = logging.getLogger(__name__)

ENV_PREFIX = "CERT_REGISTRY_"
_FALLBACK_CHOICES = ("first", "none")


@dataclass(frozen=True)
class Settings:
    expiring_window_days: int = 30
    default_validity_months: int = DEFAULT_VALIDITY_MONTHS
    default_department: str = DEFAULT_DEPARTMENT
    reminder_threshold_days: int = 60
    fallback_position: str = "first"

    @property
    def expiring_window(self) -> timedelta:
        return timedelta(days=self.expiring_window_days)

    @classmethod
    def from_env(cls, env_file: Optional[Path | str] = None) -> "Settings":
        """Defaults overridden by ``CERT_REGISTRY_<FIELD>`` variables.

        A ``.env`` file (``env_file`` or the one found from the working
        directory) is loaded first without overriding the real environment.
        """
        if env_file is not None:
            load_dotenv(env_file, override=False)
        else:
            load_dotenv(override=False)
        values = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or not raw.strip():
                continue
            raw = raw.strip()
            if f.type in ("int", int):
                try:
                    values[f.name] = int(raw)
                except ValueError:
                    log.warning("ignoring %s%s=%r (not an integer)", ENV_PREFIX, f.name.upper(), raw)
            else:
                values[f.name] = raw
        settings = cls(**values)
        if settings.fallback_position not in _FALLBACK_CHOICES:
            log.warning("unknown fallback_position %r; using 'first'", settings.fallback_position)
            settings = cls(**{**values, "fallback_position": "first"})
        return settings


__all__ = ["ENV_PREFIX", "Settings"]
