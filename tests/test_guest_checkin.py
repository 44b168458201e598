import itertools
from datetime import date, datetime

import pytest
import pytest_asyncio

from pms_core.errors import ExpiredTokenError, NotFoundError, ValidationError
from pms_core.guest_checkin.access import (
    add_manual_guest,
    completion_status,
    compute_completion,
    decline_invitation,
    delete_guest,
    get_access,
    invite_guest,
    issue_main_guest_access,
    list_booking_guests,
    primary_booking,
    resolve_access,
    token_expiry_for,
    update_guest_details,
    verify_token,
)
from pms_core.models import Booking, CompletionStatus, Customer, GuestType, InvitationStatus

from .factories import NOW, RecordingNotifier, add_booking, add_customer, add_room, at

PERSONAL = {"first_name": "Anna", "last_name": "Keller", "dob": date(1990, 5, 1)}
IDENTITY = {"nationality": "DE", "id_card_number": "L01X00T47"}
ADDRESS = {"city": "Berlin"}


@pytest_asyncio.fixture
async def booking(session):
    room = await add_room(session)
    guest = await add_customer(session, first_name="Anna", last_name="Keller")
    booking = await add_booking(session, room, guest, date(2030, 1, 15), date(2030, 1, 18))
    await session.commit()
    return booking


@pytest_asyncio.fixture
async def main_access(session, booking):
    access = await issue_main_guest_access(session, booking, now=NOW)
    await session.commit()
    return access


# =============================================================================
# COMPLETION
# =============================================================================

@pytest.mark.parametrize("personal,identity,address", list(itertools.product([False, True], repeat=3)))
def test_completion_status_grid(personal, identity, address):
    fields = {"email": "anna@example.com"}
    for enabled, values in ((personal, PERSONAL), (identity, IDENTITY), (address, ADDRESS)):
        if enabled:
            fields.update(values)

    flags = compute_completion(Customer(**fields))

    assert flags == (personal, identity, address)
    expected = (
        CompletionStatus.COMPLETE if all(flags)
        else CompletionStatus.PARTIAL if any(flags)
        else CompletionStatus.INCOMPLETE
    )
    assert completion_status(*flags) == expected


def test_passport_satisfies_identity():
    customer = Customer(
        email="anna@example.com",
        nationality="DE",
        passport_number="C01X00T47",
        passport_expiry=date(2032, 1, 1),
        passport_issued_country="DE",
    )
    assert compute_completion(customer)[1] is True

    customer.passport_issued_country = "  "
    assert compute_completion(customer)[1] is False


def test_primary_booking_is_earliest_check_in():
    later = Booking(id="b-2", check_in=at(date(2030, 3, 1)))
    earlier = Booking(id="b-1", check_in=at(date(2030, 2, 1)))

    assert primary_booking([later, earlier]) is earlier
    assert primary_booking([]) is None


# =============================================================================
# MAIN GUEST ACCESS
# =============================================================================

class TestMainGuestAccess:
    async def test_issue(self, booking, main_access):
        assert main_access.is_main_guest is True
        assert main_access.guest_type == GuestType.MAIN_GUEST
        assert main_access.invitation_status == InvitationStatus.NOT_APPLICABLE
        assert len(main_access.access_token) == 64
        assert main_access.token_expires_at == datetime(2030, 1, 16, 23, 59, 59, 999999)
        assert main_access.token_expires_at == token_expiry_for(booking)
        assert main_access.completion_status == CompletionStatus.INCOMPLETE

    async def test_reissue_rotates_token_and_keeps_progress(self, session, booking, main_access):
        await update_guest_details(session, booking.customer_id, {**PERSONAL, **IDENTITY, **ADDRESS})
        await session.commit()
        old_token = main_access.access_token

        access = await issue_main_guest_access(session, booking, now=NOW)
        await session.commit()

        assert access.access_token != old_token
        assert access.completion_status == CompletionStatus.COMPLETE
        with pytest.raises(NotFoundError):
            await resolve_access(session, old_token, NOW)

    async def test_verify_returns_guest_and_booking(self, session, booking, main_access):
        customer, verified_booking, access = await verify_token(session, main_access.access_token, NOW)

        assert customer.id == booking.customer_id
        assert verified_booking.id == booking.id
        assert access.is_main_guest

    async def test_expired_token_changes_nothing(self, session, main_access):
        with pytest.raises(ExpiredTokenError):
            await verify_token(session, main_access.access_token, datetime(2030, 1, 17))

    async def test_unknown_token(self, session, main_access):
        with pytest.raises(NotFoundError):
            await verify_token(session, "0" * 64, NOW)

    async def test_update_details_recomputes_completion(self, session, booking, main_access):
        await update_guest_details(session, booking.customer_id, {"dob": date(1990, 5, 1)})
        await session.commit()

        access = await get_access(session, booking.customer_id, booking.id)
        assert access.personal_info_complete is True
        assert access.completion_status == CompletionStatus.PARTIAL
        assert access.check_in_completed_at is None

        await update_guest_details(session, booking.customer_id, {**IDENTITY, **ADDRESS})
        assert access.completion_status == CompletionStatus.COMPLETE
        assert access.check_in_completed_at is not None

        await update_guest_details(session, booking.customer_id, {"city": None})
        assert access.completion_status == CompletionStatus.PARTIAL
        assert access.check_in_completed_at is None

    async def test_update_rejects_unknown_fields(self, session, booking, main_access):
        with pytest.raises(ValidationError):
            await update_guest_details(session, booking.customer_id, {"email": "other@example.com"})


# =============================================================================
# CO-GUESTS
# =============================================================================

class TestInvitations:
    async def test_invite_sends_link(self, session, main_access, notifier):
        access = await invite_guest(session, main_access, "Ben@Example.com", notifier, first_name="Ben", now=NOW)

        assert access.guest_type == GuestType.INVITED
        assert access.invitation_status == InvitationStatus.PENDING
        assert access.invited_by_customer_id == main_access.customer_id
        assert access.invitation_sent_at == NOW
        assert access.token_expires_at == main_access.token_expires_at

        [sent] = notifier.invitations
        assert sent["email"] == "ben@example.com"
        assert sent["inviter"] == "Anna Keller"
        assert sent["link"].endswith(f"/online-checkin/{access.access_token}")

    async def test_opening_link_accepts(self, session, main_access, notifier):
        invited = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)

        _, _, access = await verify_token(session, invited.access_token, NOW)

        assert access.invitation_status == InvitationStatus.ACCEPTED
        assert access.invitation_accepted_at == NOW

    async def test_reinvite_pending_rotates_token(self, session, main_access, notifier):
        first = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)
        first_token = first.access_token

        second = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)

        assert second.customer_id == first.customer_id
        assert second.access_token != first_token
        assert len(notifier.invitations) == 2

    async def test_declined_invitation_can_be_reissued(self, session, main_access, notifier):
        invited = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)
        await decline_invitation(session, invited.access_token, NOW)
        await session.commit()

        again = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)

        assert again.invitation_status == InvitationStatus.PENDING

    async def test_accepted_guest_cannot_be_reinvited(self, session, main_access, notifier):
        invited = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)
        await verify_token(session, invited.access_token, NOW)
        await session.commit()

        with pytest.raises(ValidationError, match="already registered"):
            await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)

    async def test_self_invite_is_rejected(self, session, main_access, notifier):
        with pytest.raises(ValidationError):
            await invite_guest(session, main_access, "ANNA@example.com", notifier, now=NOW)

        assert notifier.invitations == []

    async def test_self_invite_matches_stored_email_case_insensitively(self, session, notifier):
        room = await add_room(session)
        guest = await add_customer(session, email="Carla@Example.com", first_name="Carla")
        carla_booking = await add_booking(session, room, guest, date(2030, 2, 1), date(2030, 2, 3))
        access = await issue_main_guest_access(session, carla_booking, now=NOW)
        await session.commit()

        with pytest.raises(ValidationError, match="yourself"):
            await invite_guest(session, access, "carla@example.com", notifier, now=NOW)

    async def test_expired_invitation_is_not_accepted(self, session, main_access, notifier):
        invited = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)

        with pytest.raises(ExpiredTokenError):
            await verify_token(session, invited.access_token, datetime(2030, 1, 17))
        await session.commit()

        stored = await reload_access(session, invited)
        assert stored.invitation_status == InvitationStatus.PENDING
        assert stored.invitation_accepted_at is None

    async def test_email_failure_keeps_invitation(self, session, booking, main_access):
        access = await invite_guest(session, main_access, "ben@example.com", RecordingNotifier(fail=True), now=NOW)

        stored = await reload_access(session, access)
        assert stored.invitation_status == InvitationStatus.PENDING

    async def test_decline_only_pending(self, session, main_access):
        with pytest.raises(ValidationError):
            await decline_invitation(session, main_access.access_token, NOW)


class TestManualGuests:
    async def test_add_manual_guest_with_details(self, session, main_access, notifier):
        access = await add_manual_guest(
            session,
            main_access,
            "carla@example.com",
            details={"first_name": "Carla", "last_name": "Ruiz", "dob": date(2015, 2, 3), **IDENTITY, **ADDRESS},
        )

        assert access.guest_type == GuestType.MANUAL
        assert access.invitation_status == InvitationStatus.NOT_APPLICABLE
        assert access.completion_status == CompletionStatus.COMPLETE
        assert notifier.invitations == []

    async def test_manual_guest_cannot_be_invited(self, session, main_access, notifier):
        await add_manual_guest(session, main_access, "carla@example.com")

        with pytest.raises(ValidationError):
            await invite_guest(session, main_access, "carla@example.com", notifier, now=NOW)

    async def test_delete_guest(self, session, booking, main_access, notifier):
        invited = await invite_guest(session, main_access, "ben@example.com", notifier, now=NOW)

        await delete_guest(session, booking.id, invited.customer_id)
        await session.commit()

        guests = await list_booking_guests(session, booking.id)
        assert [customer.id for _, customer in guests] == [booking.customer_id]

    async def test_main_guest_cannot_be_deleted(self, session, booking, main_access):
        with pytest.raises(ValidationError):
            await delete_guest(session, booking.id, booking.customer_id)

    async def test_delete_unknown_guest(self, session, booking, main_access):
        with pytest.raises(NotFoundError):
            await delete_guest(session, booking.id, "missing")


async def reload_access(session, access):
    return await session.get(
        type(access), (access.customer_id, access.booking_id), populate_existing=True
    )
