"""
Audit Log
=========
Structured records cho mọi decision và action, để host đẩy sang
logging / metrics pipeline.

Fields bắt buộc: target_id, old_value, new_value, reason, timestamp.

Usage:
    >>> audit = AuditLog(maxlen=1000, sinks=[my_sink])
    >>> audit.emit(AuditRecord('action', 'web', 2, 4, 'target-tracking-scale-up', now))
    >>> audit.to_dataframe()
"""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)

# Event types
DECISION = "decision"
ACTION = "action"
REJECTED = "rejected"
ERROR = "error"


@dataclass
class AuditRecord:
    """
    Record của một decision / action / rejection.

    Attributes:
        event: 'decision', 'action', 'rejected' hoặc 'error'
        target_id: Target ID
        old_value: Capacity trước
        new_value: Capacity đề xuất / đã apply
        reason: Reason code
        timestamp: Thời điểm
        detail: Thông tin thêm (statistic, error message...)
    """
    event: str
    target_id: str
    old_value: Any
    new_value: Any
    reason: str
    timestamp: pd.Timestamp
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["timestamp"] = self.timestamp.isoformat()
        return record


AuditSink = Callable[[AuditRecord], None]


class AuditLog:
    """
    Bounded in-memory audit history + forward sang sinks.

    Sink lỗi chỉ bị log, không ảnh hưởng control loop.

    Attributes:
        maxlen: Số records tối đa giữ trong memory
        sinks: List callables nhận AuditRecord
    """

    def __init__(self, maxlen: int = 10_000, sinks: Optional[Iterable[AuditSink]] = None):
        self.maxlen = maxlen
        self.sinks: List[AuditSink] = list(sinks or [])
        self._records: Deque[AuditRecord] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def add_sink(self, sink: AuditSink):
        self.sinks.append(sink)

    def emit(self, record: AuditRecord):
        with self._lock:
            self._records.append(record)

        level = logging.INFO if record.event == ACTION else logging.DEBUG
        if record.event == ERROR:
            level = logging.WARNING
        logger.log(
            level,
            f"{record.event} {record.target_id}: {record.old_value} -> {record.new_value} ({record.reason})",
            extra={"audit": record.to_dict()}
        )

        for sink in list(self.sinks):
            try:
                sink(record)
            except Exception:
                logger.exception(f"Audit sink {sink!r} failed")

    def records(
        self,
        target_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[AuditRecord]:
        """Records gần nhất, lọc theo target và event type."""
        with self._lock:
            records = list(self._records)
        if target_id is not None:
            records = [r for r in records if r.target_id == target_id]
        if event is not None:
            records = [r for r in records if r.event == event]
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def clear(self):
        with self._lock:
            self._records.clear()

    def to_dataframe(self, target_id: Optional[str] = None) -> pd.DataFrame:
        """Audit history dưới dạng DataFrame."""
        records = self.records(target_id=target_id)
        if not records:
            return pd.DataFrame()

        return pd.DataFrame([
            {
                'timestamp': r.timestamp,
                'event': r.event,
                'target_id': r.target_id,
                'old_value': r.old_value,
                'new_value': r.new_value,
                'reason': r.reason
            }
            for r in records
        ])

    def get_stats(self) -> Dict[str, int]:
        """Thống kê về scaling."""
        history_df = self.to_dataframe()

        if len(history_df) == 0:
            return {
                'total_events': 0,
                'decisions': 0,
                'actions': 0,
                'rejections': 0,
                'errors': 0
            }

        return {
            'total_events': len(history_df),
            'decisions': int((history_df['event'] == DECISION).sum()),
            'actions': int((history_df['event'] == ACTION).sum()),
            'rejections': int((history_df['event'] == REJECTED).sum()),
            'errors': int((history_df['event'] == ERROR).sum())
        }
