"""
Effectors
=========
Collaborators thực hiện scaling action ở hệ thống bên ngoài
(cloud scaling API, orchestrator resource-patch API).

Engine không bao giờ gọi thẳng cloud / cluster API; host inject effector.

Classes:
- Effector: Protocol apply(target_id, value) -> bool
- InMemoryEffector: Ghi lại calls, có thể cấu hình fail theo target
- DryRunEffector: Chỉ log, luôn thành công
"""

import logging
import threading
from typing import Any, Dict, List, Protocol, Set, Tuple

logger = logging.getLogger(__name__)


class Effector(Protocol):
    """
    Áp dụng capacity mới cho target.

    Trả về False (hoặc raise) nếu thất bại. Engine gọi tối đa một lần
    mỗi decision và không retry trong cùng cycle.
    """

    def apply(self, target_id: str, value: Any) -> bool:
        ...


class InMemoryEffector:
    """
    Effector trong memory cho tests và simulator.

    Attributes:
        calls: List (target_id, value) theo thứ tự gọi
        state: Capacity cuối cùng đã apply cho mỗi target
        failing: Targets sẽ trả về False
        raising: Targets sẽ raise RuntimeError
    """

    def __init__(self):
        self.calls: List[Tuple[str, Any]] = []
        self.state: Dict[str, Any] = {}
        self.failing: Set[str] = set()
        self.raising: Set[str] = set()
        self._lock = threading.Lock()

    def fail_for(self, target_id: str, raise_error: bool = False):
        """Cấu hình target sẽ fail ở các lần apply tiếp theo."""
        (self.raising if raise_error else self.failing).add(target_id)

    def recover(self, target_id: str):
        self.failing.discard(target_id)
        self.raising.discard(target_id)

    def apply(self, target_id: str, value: Any) -> bool:
        with self._lock:
            self.calls.append((target_id, value))
        if target_id in self.raising:
            raise RuntimeError(f"scaling API unavailable for {target_id}")
        if target_id in self.failing:
            return False
        with self._lock:
            self.state[target_id] = value
        return True


class DryRunEffector:
    """Chỉ log action, không scale gì. Mặc định của host khi chưa inject effector."""

    def apply(self, target_id: str, value: Any) -> bool:
        logger.info(f"[DRY RUN] would apply {target_id} -> {value}")
        return True
