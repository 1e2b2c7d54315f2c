"""
Tests for order/payment transition rules and external status translation.
"""
import pytest

from commerce_sync.core.states import (
    EbayOrderStatus,
    FakeOrderStatus,
    OrderStatus,
    PaymentStatus,
    TERMINAL_ORDER_STATUSES,
    can_transition_order,
    can_transition_payment,
    translate_external_status,
)


class TestOrderTransitions:
    """Test suite for forward-only order progression."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.PENDING, OrderStatus.CONFIRMED),
            (OrderStatus.CONFIRMED, OrderStatus.PROCESSING),
            (OrderStatus.PROCESSING, OrderStatus.SHIPPED),
            (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
            (OrderStatus.CONFIRMED, OrderStatus.SHIPPED),
            (OrderStatus.PENDING, OrderStatus.CANCELLED),
            (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
            (OrderStatus.CONFIRMED, OrderStatus.REFUNDED),
            (OrderStatus.SHIPPED, OrderStatus.REFUNDED),
        ],
    )
    def test_forward_moves_allowed(self, current: OrderStatus, target: OrderStatus) -> None:
        """Test that moves along the fulfilment path and its branches are allowed."""
        assert can_transition_order(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (OrderStatus.SHIPPED, OrderStatus.PROCESSING),
            (OrderStatus.CONFIRMED, OrderStatus.PENDING),
            (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
            (OrderStatus.PENDING, OrderStatus.REFUNDED),
            (OrderStatus.CONFIRMED, OrderStatus.CONFIRMED),
        ],
    )
    def test_backward_and_invalid_moves_rejected(
        self, current: OrderStatus, target: OrderStatus
    ) -> None:
        """Test that an order never moves backwards or re-enters its own state."""
        assert not can_transition_order(current, target)

    @pytest.mark.unit
    def test_terminal_states_are_never_left(self) -> None:
        """Test that delivered, cancelled and refunded orders accept no transition."""
        for terminal in TERMINAL_ORDER_STATUSES:
            for target in OrderStatus:
                assert not can_transition_order(terminal, target)


class TestPaymentTransitions:
    """Test suite for payment status rules."""

    @pytest.mark.unit
    def test_payment_lifecycle(self) -> None:
        """Test pending -> succeeded -> refunded and pending -> failed."""
        assert can_transition_payment(PaymentStatus.PENDING, PaymentStatus.SUCCEEDED)
        assert can_transition_payment(PaymentStatus.PENDING, PaymentStatus.FAILED)
        assert can_transition_payment(PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED)

    @pytest.mark.unit
    def test_failed_payment_cannot_succeed(self) -> None:
        """Test that a late success event cannot revive a failed payment."""
        assert not can_transition_payment(PaymentStatus.FAILED, PaymentStatus.SUCCEEDED)
        assert not can_transition_payment(PaymentStatus.SUCCEEDED, PaymentStatus.PENDING)
        assert not can_transition_payment(PaymentStatus.REFUNDED, PaymentStatus.SUCCEEDED)


class TestExternalStatusTranslation:
    """Test suite for marketplace status mapping."""

    @pytest.mark.unit
    def test_every_external_status_maps(self) -> None:
        """Test that every member of each external enum translates to a canonical status."""
        for member in EbayOrderStatus:
            assert isinstance(translate_external_status(EbayOrderStatus, member.value), OrderStatus)
        for member in FakeOrderStatus:
            assert isinstance(translate_external_status(FakeOrderStatus, member.value), OrderStatus)

    @pytest.mark.unit
    def test_known_statuses(self) -> None:
        """Test representative mappings."""
        assert translate_external_status(EbayOrderStatus, "PAID") is OrderStatus.CONFIRMED
        assert translate_external_status(EbayOrderStatus, "IN_PROGRESS") is OrderStatus.PROCESSING
        assert translate_external_status(FakeOrderStatus, "shipped") is OrderStatus.SHIPPED

    @pytest.mark.unit
    def test_unrecognised_status_maps_to_pending(self) -> None:
        """Test that unknown values fall back to pending instead of raising."""
        assert translate_external_status(EbayOrderStatus, "ON_HOLD") is OrderStatus.PENDING
        assert translate_external_status(FakeOrderStatus, None) is OrderStatus.PENDING
