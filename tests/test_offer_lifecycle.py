"""Unit tests for the offer state machine, role rules and offer helpers."""

from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import BUSINESS_ID, OTHER_RIDER_ID, RIDER_ID, STRANGER_ID, make_offer
from lastmile.domain import geo
from lastmile.domain.enums import OFFER_TRANSITIONS, OfferStatus
from lastmile.domain.exceptions import InvalidCoordinates, InvalidStatusTransition
from lastmile.domain.offer import PaymentTerms
from lastmile.domain.roles import Business, Rider, Unknown


class TestOfferCreation:
    def test_new_offer_is_open(self, offer):
        assert offer.status == OfferStatus.OPEN
        assert offer.rider_id is None
        assert offer.created_at == offer.clock()

    def test_history_starts_with_creation_entry(self, offer):
        assert len(offer.status_history) == 1
        entry = offer.status_history[0]
        assert entry.status == OfferStatus.OPEN
        assert entry.actor == BUSINESS_ID
        assert entry.notes == "Offer created"


class TestRoles:
    def test_business_owner(self, offer):
        assert offer.get_role(BUSINESS_ID) == Business(BUSINESS_ID)

    def test_no_rider_before_acceptance(self, offer):
        assert isinstance(offer.get_role(RIDER_ID), Unknown)

    def test_assigned_rider(self, accepted_offer):
        assert accepted_offer.get_role(RIDER_ID) == Rider(RIDER_ID)
        assert isinstance(accepted_offer.get_role(OTHER_RIDER_ID), Unknown)


class TestTransitionTable:
    @pytest.mark.parametrize("status", list(OfferStatus))
    def test_valid_next_states_follow_table(self, offer, status):
        offer.status = status
        assert offer.valid_next_states == OFFER_TRANSITIONS[status]

    def test_open_to_picked_up_is_rejected(self, offer):
        result = offer.validate_transition(OfferStatus.PICKED_UP, RIDER_ID)
        assert not result.is_valid
        assert result.error == "Invalid status transition from 'open' to 'picked_up'"
        assert result.valid_transitions == (OfferStatus.ACCEPTED, OfferStatus.CANCELLED)

    def test_delivered_cannot_be_cancelled(self, accepted_offer):
        accepted_offer.advance_to(OfferStatus.DELIVERED, RIDER_ID)
        with pytest.raises(InvalidStatusTransition) as exc:
            accepted_offer.update_status(OfferStatus.CANCELLED, BUSINESS_ID)
        assert exc.value.valid_transitions == (OfferStatus.COMPLETED,)

    def test_rejected_update_leaves_offer_untouched(self, offer):
        with pytest.raises(InvalidStatusTransition):
            offer.update_status(OfferStatus.DELIVERED, RIDER_ID)
        assert offer.status == OfferStatus.OPEN
        assert len(offer.status_history) == 1
        assert offer.delivered_at is None


class TestAcceptance:
    def test_rider_accepts_open_offer(self, offer, clock):
        result = offer.update_status(OfferStatus.ACCEPTED, RIDER_ID)
        assert result.previous_status == OfferStatus.OPEN
        assert result.new_status == OfferStatus.ACCEPTED
        assert offer.rider_id == RIDER_ID
        assert offer.accepted_at == clock()
        assert len(offer.status_history) == 2

    def test_business_cannot_accept_own_offer(self, offer):
        result = offer.validate_transition(OfferStatus.ACCEPTED, BUSINESS_ID)
        assert not result.is_valid
        assert result.error == "Only riders can accept offers"

    def test_same_rider_reaccept_is_noop(self, accepted_offer):
        result = accepted_offer.validate_transition(OfferStatus.ACCEPTED, RIDER_ID)
        assert result.is_valid and result.is_noop

        update = accepted_offer.update_status(OfferStatus.ACCEPTED, RIDER_ID)
        assert update.previous_status == update.new_status == OfferStatus.ACCEPTED
        assert accepted_offer.rider_id == RIDER_ID
        assert len(accepted_offer.status_history) == 2

    def test_other_rider_cannot_accept(self, accepted_offer):
        with pytest.raises(InvalidStatusTransition) as exc:
            accepted_offer.update_status(OfferStatus.ACCEPTED, OTHER_RIDER_ID)
        assert exc.value.message == "Offer already accepted by another rider"
        assert accepted_offer.rider_id == RIDER_ID


class TestRoleRules:
    def test_only_assigned_rider_picks_up(self, accepted_offer):
        result = accepted_offer.validate_transition(OfferStatus.PICKED_UP, BUSINESS_ID)
        assert result.error == "Only the assigned rider can update this status"

    def test_business_may_complete(self, accepted_offer):
        accepted_offer.advance_to(OfferStatus.DELIVERED, RIDER_ID)
        accepted_offer.update_status(OfferStatus.COMPLETED, BUSINESS_ID)
        assert accepted_offer.status == OfferStatus.COMPLETED

    def test_stranger_cannot_complete(self, accepted_offer):
        accepted_offer.advance_to(OfferStatus.DELIVERED, RIDER_ID)
        result = accepted_offer.validate_transition(OfferStatus.COMPLETED, STRANGER_ID)
        assert result.error == "Only business owners or assigned riders can complete offers"

    def test_stranger_cannot_cancel(self, accepted_offer):
        result = accepted_offer.validate_transition(OfferStatus.CANCELLED, STRANGER_ID)
        assert result.error == "Only the business owner or assigned rider can cancel this offer"

    def test_business_cancels_open_offer(self, offer, clock):
        offer.update_status(OfferStatus.CANCELLED, BUSINESS_ID, notes="No longer needed")
        assert offer.status == OfferStatus.CANCELLED
        assert offer.cancelled_at == clock()
        assert offer.status_history.latest.notes == "No longer needed"


class TestTerminalStates:
    @pytest.mark.parametrize("terminal", [OfferStatus.COMPLETED, OfferStatus.CANCELLED])
    def test_no_transition_out_of_terminal(self, accepted_offer, terminal):
        accepted_offer.status = terminal
        for target in OfferStatus:
            result = accepted_offer.validate_transition(target, RIDER_ID)
            assert not result.is_valid
            assert result.valid_transitions == ()

    def test_update_after_cancel_raises_with_empty_set(self, offer):
        offer.update_status(OfferStatus.CANCELLED, BUSINESS_ID)
        with pytest.raises(InvalidStatusTransition) as exc:
            offer.update_status(OfferStatus.ACCEPTED, RIDER_ID)
        assert exc.value.valid_transitions == ()
        assert offer.is_terminal


class TestFullLifecycle:
    def test_one_history_entry_per_transition(self, offer, clock):
        steps = [
            OfferStatus.ACCEPTED,
            OfferStatus.PICKED_UP,
            OfferStatus.IN_TRANSIT,
            OfferStatus.DELIVERED,
            OfferStatus.COMPLETED,
        ]
        for status in steps:
            clock.advance(minutes=10)
            offer.update_status(status, RIDER_ID)

        assert [e.status for e in offer.status_history] == [OfferStatus.OPEN] + steps
        assert offer.picked_up_at < offer.in_transit_at < offer.delivered_at
        assert offer.actual_duration == 40

    def test_plan_advance_lists_intermediate_steps(self, accepted_offer):
        assert accepted_offer.plan_advance(OfferStatus.IN_TRANSIT, RIDER_ID) == [
            OfferStatus.PICKED_UP,
            OfferStatus.IN_TRANSIT,
        ]

    def test_plan_advance_ignores_passed_targets(self, accepted_offer):
        accepted_offer.advance_to(OfferStatus.IN_TRANSIT, RIDER_ID)
        assert accepted_offer.plan_advance(OfferStatus.PICKED_UP, RIDER_ID) == []

    def test_plan_advance_validates_every_step(self, accepted_offer):
        with pytest.raises(InvalidStatusTransition):
            accepted_offer.plan_advance(OfferStatus.DELIVERED, BUSINESS_ID)
        assert accepted_offer.status == OfferStatus.ACCEPTED
        assert len(accepted_offer.status_history) == 2

    def test_advance_to_records_each_step(self, accepted_offer):
        results = accepted_offer.advance_to(OfferStatus.IN_TRANSIT, RIDER_ID)
        assert [r.new_status for r in results] == [OfferStatus.PICKED_UP, OfferStatus.IN_TRANSIT]
        assert len(accepted_offer.status_history) == 4

    def test_bad_location_rejected_before_mutation(self, accepted_offer):
        with pytest.raises(InvalidCoordinates):
            accepted_offer.update_status(
                OfferStatus.PICKED_UP, RIDER_ID, location=(-200.0, 10.0)
            )
        assert accepted_offer.status == OfferStatus.ACCEPTED


class TestPermissions:
    def test_business_may_edit_open_offer(self, offer):
        perms = offer.can_be_modified_by(BUSINESS_ID)
        assert perms.can_modify
        assert perms.allowed_actions == ("cancel", "edit")

    def test_rider_may_update_status(self, accepted_offer):
        perms = accepted_offer.can_be_modified_by(RIDER_ID)
        assert perms.allowed_actions == ("update_status", "cancel")

    def test_business_locked_out_after_acceptance(self, accepted_offer):
        perms = accepted_offer.can_be_modified_by(BUSINESS_ID)
        assert not perms.can_modify
        assert perms.reason == "Insufficient permissions"

    def test_terminal_offer_cannot_be_modified(self, offer):
        offer.update_status(OfferStatus.CANCELLED, BUSINESS_ID)
        assert offer.can_be_modified_by(BUSINESS_ID).reason == "Offer is in terminal state"


class TestProjections:
    def test_current_status_info(self, accepted_offer):
        info = accepted_offer.get_current_status_info()
        assert info["current_status"] == OfferStatus.ACCEPTED
        assert info["timestamp"] == accepted_offer.accepted_at
        assert info["assigned_rider"] == RIDER_ID
        assert info["valid_next_states"] == [OfferStatus.PICKED_UP, OfferStatus.CANCELLED]
        assert not info["is_terminal"]
        assert len(info["status_history"]) == 2

    def test_summary_exposes_acceptance(self, accepted_offer):
        summary = accepted_offer.get_summary()
        assert summary["accepted_by"] == RIDER_ID
        assert summary["payment"]["amount"] == 12.5


class TestOfferHelpers:
    def test_calculate_distance(self, offer):
        assert 2000 <= offer.calculate_distance() <= 2600

    def test_update_estimates(self, offer):
        offer.update_estimates("bike")
        assert offer.estimated_distance == offer.calculate_distance()
        assert offer.estimated_duration == geo.estimate_duration(
            offer.estimated_distance, "bike"
        )

    def test_package_fits_bike(self, offer):
        assert offer.fits_vehicle("bike")

    def test_valid_offer_has_no_errors(self, offer):
        assert offer.validate() == []

    def test_validation_reports_fields(self, clock):
        offer = make_offer(clock, payment=PaymentTerms(amount=0))
        offer.delivery = replace(offer.delivery, deliver_by=clock() - timedelta(hours=1))
        offer.pickup = replace(offer.pickup, coordinates=(200.0, 0.0))

        fields = {e.field for e in offer.validate()}
        assert fields == {"payment.amount", "delivery.deliver_by", "pickup.coordinates"}
