"""Scale-up decisions with trigger, cooldown and ceiling checks."""

from typing import Optional
from datetime import datetime
import logging

from .models import AutoScalerPolicy, usage_percent
from .quantity import CapacityQuantity

logger = logging.getLogger(__name__)


class ScaleDecision:
    """Represents a scaling decision."""

    def __init__(
        self,
        should_scale: bool,
        current_capacity: CapacityQuantity,
        desired_capacity: CapacityQuantity,
        usage_percent: float,
        reason: str,
    ):
        self.should_scale = should_scale
        self.current_capacity = current_capacity
        self.desired_capacity = desired_capacity
        self.usage_percent = usage_percent
        self.reason = reason

    def __repr__(self):
        return (
            f"ScaleDecision(should_scale={self.should_scale}, "
            f"current={self.current_capacity}, desired={self.desired_capacity}, "
            f"reason={self.reason!r})"
        )


class CapacityScaler:
    """
    Decides whether a PVC should grow.

    This class makes sure that a scale-up is only proposed when:
    - Usage is at or above the policy's trigger percentage
    - The cooldown since the last scale-up has elapsed
    - The next step stays within the policy's maximum size
    It never proposes shrinking a volume.
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def _is_in_cooldown(
        self,
        policy: AutoScalerPolicy,
        now: datetime,
    ) -> bool:
        """
        Check if a policy is in its cooldown period.

        A policy that never scaled is not in cooldown.
        """
        last_scale = policy.last_scale_time
        if last_scale is None:
            return False

        time_since_last_scale = (now - last_scale).total_seconds()

        if time_since_last_scale < policy.cooldown_seconds:
            remaining = policy.cooldown_seconds - time_since_last_scale
            self.logger.info(
                f"AutoScaler {policy.namespace}/{policy.name} is in cooldown. "
                f"Remaining: {remaining:.0f}s"
            )
            return True

        return False

    def next_capacity(
        self, policy: AutoScalerPolicy, current: CapacityQuantity
    ) -> CapacityQuantity:
        """Current capacity plus one step, clamped to the maximum size."""
        candidate = current.add(policy.step_quantity)
        maximum = policy.max_quantity
        if candidate > maximum:
            return maximum
        return candidate

    def decide_scaling(
        self,
        policy: AutoScalerPolicy,
        current_capacity: CapacityQuantity,
        used_bytes: int,
        total_bytes: int,
        now: datetime,
    ) -> ScaleDecision:
        """
        Decide whether and how far to grow a PVC.

        Args:
            policy: The autoscaler policy
            current_capacity: The PVC's current requested capacity
            used_bytes: Sampled bytes in use
            total_bytes: Sampled filesystem size
            now: Current time

        Returns:
            ScaleDecision object
        """
        percent = usage_percent(used_bytes, total_bytes)

        def hold(reason: str, desired: Optional[CapacityQuantity] = None) -> ScaleDecision:
            return ScaleDecision(
                should_scale=False,
                current_capacity=current_capacity,
                desired_capacity=desired or current_capacity,
                usage_percent=percent,
                reason=reason,
            )

        if percent < policy.trigger_above_percent:
            return hold(
                f"Usage {percent:.1f}% is below trigger {policy.trigger_above_percent}%"
            )

        if self._is_in_cooldown(policy, now):
            return hold("In cooldown period")

        candidate = self.next_capacity(policy, current_capacity)
        if candidate <= current_capacity:
            return hold(f"Already at maximum size {policy.max_size}")

        return ScaleDecision(
            should_scale=True,
            current_capacity=current_capacity,
            desired_capacity=candidate,
            usage_percent=percent,
            reason=(
                f"Usage {percent:.1f}% >= {policy.trigger_above_percent}%, "
                f"scaling up from {current_capacity} to {candidate}"
            ),
        )
