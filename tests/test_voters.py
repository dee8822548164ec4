"""Tests for voter registration."""

import pytest

from evote.shared.errors import DuplicateVoterError

from tests.helpers import auth_headers

REGISTRATION = {
    "name": "Jane Voter",
    "email": "Jane.Voter@evote.org",
    "voterId": "vtr12345",
    "phone": "+1 555 0100",
}


@pytest.mark.asyncio
class TestRegistration:
    """Tests for POST /api/voters/register."""

    async def test_register(self, api_client):
        response = await api_client.post("/api/voters/register", json=REGISTRATION)

        assert response.status_code == 201
        user = response.json()["data"]["user"]
        assert user["voterId"] == "VTR12345"
        assert user["email"] == "jane.voter@evote.org"
        assert user["hasVoted"] is False
        assert user["isAdmin"] is False

    @pytest.mark.parametrize("field,value,message", [
        ("voterId", "VTR12345", "Voter ID already registered"),
        ("email", "jane.voter@evote.org", "Email already registered"),
        ("phone", "+1 555 0100", "Phone number already registered"),
    ])
    async def test_duplicate_identifiers(self, api_client, field, value, message):
        await api_client.post("/api/voters/register", json=REGISTRATION)
        other = {
            "name": "John Other",
            "email": "john@evote.org",
            "voterId": "OTHER001",
            "phone": "555 0199",
            field: value,
        }

        response = await api_client.post("/api/voters/register", json=other)

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": message}

    @pytest.mark.parametrize("override", [
        {"email": "not-an-email"},
        {"voterId": "AB1"},
        {"phone": "call me"},
        {"name": "J"},
    ])
    async def test_validation(self, api_client, override):
        response = await api_client.post("/api/voters/register", json={**REGISTRATION, **override})

        assert response.status_code == 400
        assert response.json()["message"] == "Validation failed"

    async def test_me(self, api_client, service, voters, candidates):
        await service.cast_vote(voters[0].id, candidates[0].id)

        response = await api_client.get("/api/voters/me", headers=auth_headers(voters[0]))

        assert response.status_code == 200
        assert response.json()["data"]["user"]["hasVoted"] is True


@pytest.mark.asyncio
class TestVoterRegistry:

    async def test_normalizes_identifiers(self, voter_registry):
        voter = await voter_registry.register(" Ann ", " abc123 ", " Ann@Mail.ORG ", " 555 1234 ")

        assert voter.voter_code == "ABC123"
        assert voter.email == "ann@mail.org"
        assert voter.phone == "555 1234"
        assert voter.name == "Ann"

    async def test_voter_code_is_case_insensitive(self, voter_registry):
        await voter_registry.register("Ann", "abc123", "ann@mail.org", "555 1234")

        with pytest.raises(DuplicateVoterError) as exc_info:
            await voter_registry.register("Ben", "ABC123", "ben@mail.org", "555 9876")

        assert exc_info.value.field == "voter_code"
