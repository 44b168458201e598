from datetime import date

import pytest_asyncio

from pms_core.guest_checkin.access import issue_main_guest_access
from pms_core.guest_checkin.routes import TOKEN_COOKIE

from .factories import add_booking, add_customer, add_room


def with_token(token):
    return {"Cookie": f"{TOKEN_COOKIE}={token}"}


@pytest_asyncio.fixture
async def booking(session):
    room = await add_room(session)
    guest = await add_customer(session, first_name="Anna", last_name="Keller")
    booking = await add_booking(session, room, guest, date(2030, 1, 15), date(2030, 1, 18))
    await session.commit()
    return booking


@pytest_asyncio.fixture
async def token(session, booking):
    access = await issue_main_guest_access(session, booking)
    await session.commit()
    return access.access_token


class TestVerify:
    async def test_sets_cookie_and_returns_booking(self, client, booking, token):
        response = await client.get(f"/online-checkin/verify/{token}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == 200
        assert body["data"]["booking"]["id"] == booking.id
        assert body["data"]["guest"]["is_main_guest"] is True
        assert body["data"]["guest"]["completion_status"] == "INCOMPLETE"
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{TOKEN_COOKIE}={token}")
        assert "HttpOnly" in cookie

    async def test_unknown_token(self, client, token):
        response = await client.get(f"/online-checkin/verify/{'0' * 64}")

        assert response.status_code == 404
        assert response.json()["status"] == 404

    async def test_expired_token(self, client, session):
        room = await add_room(session)
        guest = await add_customer(session)
        past = await add_booking(session, room, guest, date(2020, 3, 1), date(2020, 3, 4))
        access = await issue_main_guest_access(session, past)
        await session.commit()

        response = await client.get(f"/online-checkin/verify/{access.access_token}")

        assert response.status_code == 401
        assert "set-cookie" not in response.headers


class TestGuests:
    async def test_cookie_is_required(self, client, token):
        response = await client.get("/online-checkin/guests")

        assert response.status_code == 401
        assert response.json()["message"] == "Unauthorized"

    async def test_invite_and_list(self, client, token, notifier):
        response = await client.post(
            "/online-checkin/guests/invite",
            json={"email": "ben@example.com", "first_name": "Ben"},
            headers=with_token(token),
        )

        assert response.status_code == 201
        invited = response.json()["data"]
        assert invited["guest_type"] == "INVITED"
        assert invited["invitation_status"] == "PENDING"
        assert [i["email"] for i in notifier.invitations] == ["ben@example.com"]

        listed = await client.get("/online-checkin/guests", headers=with_token(token))
        assert [g["email"] for g in listed.json()["data"]] == ["anna@example.com", "ben@example.com"]

    async def test_invalid_email_is_a_validation_error(self, client, token):
        response = await client.post(
            "/online-checkin/guests/invite",
            json={"email": "not-an-email"},
            headers=with_token(token),
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Validation failed"

    async def test_invited_guest_cannot_invite(self, client, session, token, notifier):
        await client.post(
            "/online-checkin/guests/invite",
            json={"email": "ben@example.com"},
            headers=with_token(token),
        )
        ben_token = notifier.invitations[0]["link"].rsplit("/", 1)[-1]

        response = await client.post(
            "/online-checkin/guests/invite",
            json={"email": "carla@example.com"},
            headers=with_token(ben_token),
        )

        assert response.status_code == 400

    async def test_manual_guest(self, client, token):
        response = await client.post(
            "/online-checkin/guests/manual",
            json={"email": "carla@example.com", "first_name": "Carla", "city": "Madrid"},
            headers=with_token(token),
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["guest_type"] == "MANUAL"
        assert data["address_info_complete"] is True

    async def test_patch_self(self, client, booking, token):
        response = await client.patch(
            f"/online-checkin/guests/{booking.customer_id}",
            json={"dob": "1990-05-01", "city": "Berlin"},
            headers=with_token(token),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["personal_info_complete"] is True
        assert data["completion_status"] == "PARTIAL"

    async def test_main_guest_cannot_be_removed(self, client, booking, token):
        response = await client.delete(
            f"/online-checkin/guests/{booking.customer_id}",
            headers=with_token(token),
        )

        assert response.status_code == 400

    async def test_remove_invited_guest(self, client, token):
        invited = await client.post(
            "/online-checkin/guests/invite",
            json={"email": "ben@example.com"},
            headers=with_token(token),
        )
        ben_id = invited.json()["data"]["customer_id"]

        response = await client.delete(f"/online-checkin/guests/{ben_id}", headers=with_token(token))

        assert response.status_code == 200
        listed = await client.get("/online-checkin/guests", headers=with_token(token))
        assert len(listed.json()["data"]) == 1

    async def test_decline_invitation(self, client, token, notifier):
        await client.post(
            "/online-checkin/guests/invite",
            json={"email": "ben@example.com"},
            headers=with_token(token),
        )
        ben_token = notifier.invitations[0]["link"].rsplit("/", 1)[-1]

        response = await client.post(f"/online-checkin/invitations/{ben_token}/decline")

        assert response.status_code == 200
        assert response.json()["data"] == {"invitation_status": "DECLINED"}
