"""
Autoscaling Simulator
=====================
Module replay metrics đã ghi (historical) qua decision engine với clock giả lập.

Cho phép:
    - Test các scaling policies khác nhau trước khi deploy
    - So sánh target-tracking vs step, các dead-band / cooldown khác nhau
    - Phân tích capacity-hours và overload

Chế độ signal:
    - value_col: utilization đã đo sẵn (không phụ thuộc capacity)
    - load_col: tổng load; utilization = load / (capacity * unit_capacity) * 100,
      nên scaling feed back vào signal

Usage:
    >>> simulator = AutoscalingSimulator(policy, target)
    >>> results = simulator.simulate(df, load_col='requests', unit_capacity=1000)
    >>> events = simulator.get_scaling_events(results)
"""

import copy
import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from ..config import EngineConfig
from ..effectors import InMemoryEffector
from ..timeutils import DurationLike, to_timedelta, to_timestamp
from .engine import AutoscalingEngine
from .policy import ScalableTarget, ScalingPolicy

logger = logging.getLogger(__name__)


class _SimulatedClock:
    """Clock do simulator điều khiển."""

    def __init__(self, start: pd.Timestamp):
        self.now = start

    def __call__(self) -> pd.Timestamp:
        return self.now


class AutoscalingSimulator:
    """
    Simulator cho horizontal scaling policies.

    Chạy simulation trên historical data để:
        - Đánh giá hiệu quả của policy
        - So sánh các configurations khác nhau

    Attributes:
        policy: ScalingPolicy
        target: ScalableTarget (capacity ban đầu và bounds)
        config: EngineConfig (tick_interval là chu kỳ evaluate)

    Example:
        >>> sim = AutoscalingSimulator(policy, target)
        >>> results = sim.simulate(df, value_col='cpu')
        >>> print(sim.calculate_metrics(results)['scale_out_count'])
    """

    def __init__(
        self,
        policy: ScalingPolicy,
        target: ScalableTarget,
        config: Optional[EngineConfig] = None
    ):
        if policy.is_vertical or target.is_vertical:
            raise ValueError("AutoscalingSimulator only supports horizontal policies")

        self.policy = policy
        self.target = target
        self.config = config or EngineConfig(max_workers=1)

    def simulate(
        self,
        data: pd.DataFrame,
        value_col: str = "value",
        load_col: Optional[str] = None,
        unit_capacity: float = 1.0,
        tick_interval: Optional[DurationLike] = None
    ) -> pd.DataFrame:
        """
        Chạy autoscaling simulation.

        Args:
            data: DataFrame indexed by timestamp (DatetimeIndex)
            value_col: Cột utilization (dùng khi load_col=None)
            load_col: Cột tổng load (optional)
            unit_capacity: Load mà một instance xử lý ở 100% utilization
            tick_interval: Chu kỳ evaluate (mặc định: config.tick_interval)

        Returns:
            DataFrame với simulation results:
                - timestamp (index)
                - utilization
                - capacity
                - capacity_change
                - action
                - reason
                - applied
                - statistic
                - is_overloaded
                - dropped_load
        """
        if len(data) == 0:
            return pd.DataFrame()

        data = data.sort_index()
        interval = to_timedelta(tick_interval) if tick_interval is not None else self.config.tick_interval

        clock = _SimulatedClock(to_timestamp(data.index[0]))
        engine = AutoscalingEngine(self.config, effector=InMemoryEffector(), clock=clock)
        engine.register(copy.deepcopy(self.target), self.policy)

        results = []
        next_tick = clock.now

        for timestamp, row in data.iterrows():
            clock.now = to_timestamp(timestamp)
            capacity = engine.target(self.target.target_id).capacity

            if load_col is not None:
                load = float(row[load_col])
                total_capacity = capacity * unit_capacity
                utilization = load / total_capacity * 100 if total_capacity > 0 else 100.0
                dropped = max(0.0, load - total_capacity)
            else:
                utilization = float(row[value_col])
                dropped = 0.0

            engine.ingest(self.target.target_id, self.policy.metric, utilization, clock.now)

            action, reason, applied, statistic = "none", "", False, np.nan
            if clock.now >= next_tick:
                report = engine.tick(clock.now)
                decision = report.decisions.get(self.target.target_id)
                if decision is not None:
                    action = decision.action.value
                    reason = decision.reason.value
                    statistic = decision.statistic if decision.statistic is not None else np.nan
                result = report.applied.get(self.target.target_id) or report.rejected.get(self.target.target_id)
                if result is not None:
                    reason = result.reason.value
                applied = self.target.target_id in report.applied
                next_tick = clock.now + interval

            new_capacity = engine.target(self.target.target_id).capacity
            results.append({
                'timestamp': clock.now,
                'utilization': utilization,
                'capacity': new_capacity,
                'capacity_change': new_capacity - capacity,
                'action': action,
                'reason': reason,
                'applied': applied,
                'statistic': statistic,
                'is_overloaded': load_col is not None and dropped > 0,
                'dropped_load': dropped
            })

        engine.reconciler.shutdown()
        return pd.DataFrame(results).set_index('timestamp')

    def get_scaling_events(self, simulation_df: pd.DataFrame) -> pd.DataFrame:
        """
        Extract scaling events đã apply từ simulation results.

        Args:
            simulation_df: DataFrame từ simulate()

        Returns:
            DataFrame chỉ chứa các scaling events
        """
        if len(simulation_df) == 0:
            return simulation_df

        return simulation_df[simulation_df['applied']].copy()

    def calculate_metrics(self, simulation_df: pd.DataFrame) -> Dict:
        """
        Tính các metrics từ simulation.

        Args:
            simulation_df: DataFrame từ simulate()

        Returns:
            Dict với các metrics
        """
        if len(simulation_df) == 0:
            return {}

        # Thời gian giữa các samples, sample cuối dùng median spacing
        index = simulation_df.index.to_series()
        spacing = index.diff().shift(-1)
        spacing = spacing.fillna(spacing.median() if spacing.notna().any() else pd.Timedelta(0))
        hours = spacing.dt.total_seconds() / 3600

        capacity_hours = float((simulation_df['capacity'] * hours).sum())

        events = self.get_scaling_events(simulation_df)
        scale_out_count = int((events['capacity_change'] > 0).sum()) if len(events) > 0 else 0
        scale_in_count = int((events['capacity_change'] < 0).sum()) if len(events) > 0 else 0

        return {
            'total_hours': float(hours.sum()),
            'capacity_hours': capacity_hours,
            'avg_capacity': float(simulation_df['capacity'].mean()),
            'max_capacity': int(simulation_df['capacity'].max()),
            'min_capacity': int(simulation_df['capacity'].min()),
            'scale_out_count': scale_out_count,
            'scale_in_count': scale_in_count,
            'total_scaling_events': scale_out_count + scale_in_count,
            'cooldown_rejections': int((simulation_df['reason'] == 'cooldown-active').sum()),
            'overloaded_periods': int(simulation_df['is_overloaded'].sum()),
            'overload_rate_pct': float(simulation_df['is_overloaded'].mean() * 100),
            'total_dropped_load': float(simulation_df['dropped_load'].sum()),
            'avg_utilization': float(simulation_df['utilization'].mean()),
            'max_utilization': float(simulation_df['utilization'].max())
        }

    def compare_policies(
        self,
        data: pd.DataFrame,
        policies: Dict[str, ScalingPolicy],
        **simulate_kwargs
    ) -> pd.DataFrame:
        """
        So sánh nhiều policies trên cùng data.

        Args:
            data: Historical data
            policies: Dict {name: ScalingPolicy}
            **simulate_kwargs: Truyền thẳng vào simulate()

        Returns:
            DataFrame so sánh, sort theo capacity_hours
        """
        results = []

        for name, policy in policies.items():
            logger.info(f"Simulating: {name}...")

            sim = AutoscalingSimulator(policy, self.target, self.config)
            sim_results = sim.simulate(data, **simulate_kwargs)
            metrics = sim.calculate_metrics(sim_results)
            metrics['policy'] = name
            results.append(metrics)

        df = pd.DataFrame(results)
        if len(df) == 0:
            return df

        cols = ['policy'] + [c for c in df.columns if c != 'policy']
        return df[cols].sort_values('capacity_hours').reset_index(drop=True)
