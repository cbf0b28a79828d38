"""Versioned settlement policy and fixed-point money splits

All amounts are integers in minor units and all rates are basis points
(10000 = 100%). Rounding always truncates towards zero and any remainder is
assigned to the platform bucket, so the three parts of a split add back up to
the amount exactly.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowpay.config import settings
from escrowpay.db.models import CancellationStage, FeePolicy
from escrowpay.services.errors import InvariantViolation, NotFoundError

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10000


def apply_bps(amount: int, bps: int) -> int:
    """Share of ``amount`` at ``bps`` basis points, truncated"""
    return amount * bps // BPS_DENOMINATOR


@dataclass(frozen=True)
class SettlementPolicy:
    """Fee parameters an invoice is settled under"""
    version: str
    platform_fee_bps: int
    work_initiation_fee_bps: int

    def __post_init__(self) -> None:
        if not 0 <= self.platform_fee_bps <= BPS_DENOMINATOR:
            raise ValueError(f"platform_fee_bps out of range: {self.platform_fee_bps}")
        if self.work_initiation_fee_bps < 0 or (
            self.platform_fee_bps + self.work_initiation_fee_bps > BPS_DENOMINATOR
        ):
            raise ValueError(f"work_initiation_fee_bps out of range: {self.work_initiation_fee_bps}")

    @classmethod
    def from_settings(cls) -> "SettlementPolicy":
        return cls(
            version=settings.settlement_policy_version,
            platform_fee_bps=settings.platform_fee_bps,
            work_initiation_fee_bps=settings.work_initiation_fee_bps,
        )

    @classmethod
    def from_row(cls, row: FeePolicy) -> "SettlementPolicy":
        return cls(
            version=row.version,
            platform_fee_bps=row.platform_fee_bps,
            work_initiation_fee_bps=row.work_initiation_fee_bps,
        )

    def split_payment(self, amount: int) -> tuple[int, int]:
        """Return (platform_fee_amount, vendor_amount) for a captured payment"""
        platform_fee = apply_bps(amount, self.platform_fee_bps)
        return platform_fee, amount - platform_fee

    def split_cancellation(self, stage: CancellationStage, paid_total: int) -> "CancellationSplit":
        """Split ``paid_total`` between customer, vendor and platform for a stage"""
        if paid_total < 0:
            raise InvariantViolation(f"Negative paid total {paid_total}")

        if stage in (CancellationStage.PRE_CONFIRMATION, CancellationStage.VENDOR_CANCELLED):
            customer_refund = paid_total
            vendor_retained = 0
        elif stage == CancellationStage.POST_CONFIRMATION:
            customer_refund = apply_bps(paid_total, BPS_DENOMINATOR - self.platform_fee_bps)
            vendor_retained = 0
        elif stage == CancellationStage.POST_WORK_START:
            vendor_retained = apply_bps(paid_total, self.work_initiation_fee_bps)
            customer_refund = apply_bps(
                paid_total,
                BPS_DENOMINATOR - self.platform_fee_bps - self.work_initiation_fee_bps,
            )
        else:
            raise InvariantViolation(f"Unknown cancellation stage {stage}")

        # Remainder to platform
        platform_retained = paid_total - customer_refund - vendor_retained
        return CancellationSplit(
            stage=stage,
            paid_total=paid_total,
            customer_refund=customer_refund,
            vendor_retained=vendor_retained,
            platform_retained=platform_retained,
        )


@dataclass(frozen=True)
class CancellationSplit:
    stage: CancellationStage
    paid_total: int
    customer_refund: int
    vendor_retained: int
    platform_retained: int


def allocate_proportionally(total: int, weights: list[int]) -> list[int]:
    """Distribute ``total`` over ``weights``; the last slot absorbs rounding"""
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum == 0:
        return [0] * len(weights)

    shares = []
    remaining = total
    for i, weight in enumerate(weights):
        if i == len(weights) - 1:
            share = remaining
        else:
            share = total * weight // weight_sum
            remaining -= share
        shares.append(share)
    return shares


async def ensure_current_policy(db: AsyncSession) -> FeePolicy:
    """Persist the configured policy version, refusing to rewrite an existing one"""
    policy = SettlementPolicy.from_settings()
    row = await db.get(FeePolicy, policy.version)
    if row is None:
        row = FeePolicy(
            version=policy.version,
            platform_fee_bps=policy.platform_fee_bps,
            work_initiation_fee_bps=policy.work_initiation_fee_bps,
        )
        db.add(row)
        await db.flush()
        logger.info(f"Registered settlement policy {policy.version}")
        return row

    if (row.platform_fee_bps, row.work_initiation_fee_bps) != (
        policy.platform_fee_bps, policy.work_initiation_fee_bps
    ):
        logger.critical(
            f"Settlement policy {policy.version} already registered with different parameters"
        )
        raise InvariantViolation(
            f"Policy version {policy.version} is frozen; bump settlement_policy_version"
        )
    return row


async def load_policy(db: AsyncSession, version: str) -> SettlementPolicy:
    """Load the policy an invoice was created under"""
    result = await db.execute(select(FeePolicy).where(FeePolicy.version == version))
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError(f"Settlement policy {version} not found")
    return SettlementPolicy.from_row(row)
