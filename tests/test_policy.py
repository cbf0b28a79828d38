"""Tests for fee splits and cancellation policy arithmetic"""

import pytest

from escrowpay.db.models import CancellationStage, CancelledBy, FeePolicy, InquiryStatus
from escrowpay.services.errors import InvariantViolation
from escrowpay.services.policy import (
    SettlementPolicy,
    allocate_proportionally,
    apply_bps,
    ensure_current_policy,
    load_policy,
)
from escrowpay.services.settlement import determine_stage


@pytest.fixture
def policy() -> SettlementPolicy:
    return SettlementPolicy(version="test", platform_fee_bps=1500, work_initiation_fee_bps=4250)


class TestPaymentSplit:
    def test_fifteen_percent_platform_fee(self, policy):
        assert policy.split_payment(100_000) == (15_000, 85_000)

    def test_split_always_sums_to_amount(self, policy):
        for amount in (1, 7, 333, 60_001, 999_999):
            fee, vendor = policy.split_payment(amount)
            assert fee + vendor == amount
            assert fee == apply_bps(amount, 1500)

    def test_fee_truncates(self, policy):
        # 15% of 7 is 1.05
        assert policy.split_payment(7) == (1, 6)


class TestCancellationSplit:
    def test_pre_confirmation_refunds_everything(self, policy):
        split = policy.split_cancellation(CancellationStage.PRE_CONFIRMATION, 100_000)
        assert (split.customer_refund, split.vendor_retained, split.platform_retained) == (100_000, 0, 0)

    def test_post_confirmation_keeps_platform_fee(self, policy):
        split = policy.split_cancellation(CancellationStage.POST_CONFIRMATION, 100_000)
        assert (split.customer_refund, split.vendor_retained, split.platform_retained) == (85_000, 0, 15_000)

    def test_post_work_start_pays_vendor_work_initiation_fee(self, policy):
        split = policy.split_cancellation(CancellationStage.POST_WORK_START, 100_000)
        assert (split.customer_refund, split.vendor_retained, split.platform_retained) == (42_500, 42_500, 15_000)

    def test_vendor_cancellation_refunds_everything(self, policy):
        split = policy.split_cancellation(CancellationStage.VENDOR_CANCELLED, 100_000)
        assert (split.customer_refund, split.vendor_retained, split.platform_retained) == (100_000, 0, 0)

    def test_rounding_remainder_goes_to_platform(self, policy):
        split = policy.split_cancellation(CancellationStage.POST_WORK_START, 99_999)
        # 42.5% of 99,999 = 42,499.575 truncated on both customer and vendor shares
        assert split.vendor_retained == 42_499
        assert split.customer_refund == 42_499
        assert split.platform_retained == 15_001
        assert split.customer_refund + split.vendor_retained + split.platform_retained == 99_999

    @pytest.mark.parametrize("stage", list(CancellationStage))
    def test_conserves_paid_total(self, policy, stage):
        for paid_total in (0, 1, 3, 101, 12_345, 100_000):
            split = policy.split_cancellation(stage, paid_total)
            assert split.customer_refund + split.vendor_retained + split.platform_retained == paid_total
            assert min(split.customer_refund, split.vendor_retained, split.platform_retained) >= 0

    def test_negative_paid_total_is_an_invariant_violation(self, policy):
        with pytest.raises(InvariantViolation):
            policy.split_cancellation(CancellationStage.POST_CONFIRMATION, -1)


class TestPolicyValidation:
    def test_rejects_fees_above_one_hundred_percent(self):
        with pytest.raises(ValueError):
            SettlementPolicy(version="bad", platform_fee_bps=6000, work_initiation_fee_bps=5000)

    def test_rejects_negative_fee(self):
        with pytest.raises(ValueError):
            SettlementPolicy(version="bad", platform_fee_bps=-1, work_initiation_fee_bps=0)


class TestAllocateProportionally:
    def test_last_slot_absorbs_remainder(self):
        assert allocate_proportionally(100, [1, 1, 1]) == [33, 33, 34]

    def test_proportional_to_weights(self):
        assert allocate_proportionally(85_000, [60_000, 40_000]) == [51_000, 34_000]

    def test_sums_to_total(self):
        shares = allocate_proportionally(42_499, [33_333, 33_333, 33_333])
        assert sum(shares) == 42_499

    def test_empty_and_zero_weights(self):
        assert allocate_proportionally(10, []) == []
        assert allocate_proportionally(10, [0, 0]) == [0, 0]


class TestDetermineStage:
    def test_vendor_always_wins(self):
        assert determine_stage(CancelledBy.VENDOR, InquiryStatus.ACCEPTED, True) == CancellationStage.VENDOR_CANCELLED

    @pytest.mark.parametrize("status", [InquiryStatus.PENDING, InquiryStatus.RESPONDED])
    def test_unconfirmed_inquiry(self, status):
        assert determine_stage(CancelledBy.CUSTOMER, status, False) == CancellationStage.PRE_CONFIRMATION

    def test_accepted_without_work(self):
        assert determine_stage(CancelledBy.CUSTOMER, InquiryStatus.ACCEPTED, False) == CancellationStage.POST_CONFIRMATION

    def test_accepted_with_work(self):
        assert determine_stage(CancelledBy.CUSTOMER, InquiryStatus.ACCEPTED, True) == CancellationStage.POST_WORK_START


class TestPolicyPersistence:
    async def test_registers_configured_policy_once(self, test_db):
        row = await ensure_current_policy(test_db)
        await test_db.commit()
        again = await ensure_current_policy(test_db)

        assert row.version == again.version
        loaded = await load_policy(test_db, row.version)
        assert loaded.platform_fee_bps == 1500
        assert loaded.work_initiation_fee_bps == 4250

    async def test_frozen_version_cannot_change(self, test_db):
        from escrowpay.config import settings

        test_db.add(FeePolicy(version=settings.settlement_policy_version, platform_fee_bps=1000, work_initiation_fee_bps=4000))
        await test_db.commit()

        with pytest.raises(InvariantViolation):
            await ensure_current_policy(test_db)
