"""
Engine Configuration
====================
Cấu hình của control loop và host process.

Precedence:
    1. Environment variables (prefix SCALER_, vd: SCALER_TICK_INTERVAL=60)
    2. Giá trị truyền vào constructor
    3. Default values
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Optional

import pandas as pd

from .timeutils import to_timedelta


@dataclass
class EngineConfig:
    """
    Cấu hình engine.

    Attributes:
        tick_interval: Khoảng thời gian giữa 2 evaluation passes
        collect_interval: Khoảng thời gian giữa 2 lần pull metrics
        max_workers: Số workers tối đa evaluate song song
        effector_timeout: Timeout cho một effector call
        default_retention: Retention của target chưa có policy
        default_dead_band_percent: Dead-band mặc định cho policy config
        audit_maxlen: Số audit records giữ trong memory
        dry_run: Host dùng DryRunEffector (không scale thật)
        autostart: Host tự chạy control loop khi startup
        log_level: Log level
        log_file: File log (optional)
        policy_file: JSON policy configuration load lúc host startup (optional)
    """
    tick_interval: pd.Timedelta = pd.Timedelta(seconds=30)
    collect_interval: pd.Timedelta = pd.Timedelta(seconds=15)
    max_workers: int = 4
    effector_timeout: pd.Timedelta = pd.Timedelta(seconds=30)
    default_retention: pd.Timedelta = pd.Timedelta(hours=1)
    default_dead_band_percent: float = 10.0
    audit_maxlen: int = 10_000
    dry_run: bool = True
    autostart: bool = False
    log_level: str = "INFO"
    log_file: Optional[str] = None
    policy_file: Optional[str] = None

    def __post_init__(self):
        for name in ("tick_interval", "collect_interval", "effector_timeout", "default_retention"):
            setattr(self, name, to_timedelta(getattr(self, name)))
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.tick_interval <= pd.Timedelta(0):
            raise ValueError(f"tick_interval must be > 0, got {self.tick_interval}")

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_env(cls, prefix: str = "SCALER_", **overrides) -> "EngineConfig":
        """
        Đọc config từ environment variables.

        Args:
            prefix: Prefix của env vars
            **overrides: Giá trị dùng khi env var không set

        Returns:
            EngineConfig
        """
        values = dict(overrides)
        for f in fields(cls):
            raw = os.getenv(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            if f.type in (bool, "bool"):
                values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            elif f.name.endswith(("_interval", "_timeout", "_retention")):
                # '30' = 30 giây, '5min' = pandas offset
                values[f.name] = float(raw) if raw.replace(".", "", 1).isdigit() else raw
            else:
                values[f.name] = raw
        return cls(**values)
