"""Tests for bearer authentication, app-level routes and rate limit keys."""

from datetime import datetime, timedelta, timezone

import pytest

from app.auth import create_access_token, decode_token
from app.config import get_settings
from app.rate_limit import get_client_ip, get_party_key
from fastapi import HTTPException
from jose import jwt
from starlette.requests import Request


def make_request(client_ip: str, forwarded_for: str | None = None, token: str | None = None) -> Request:
    headers = []
    if forwarded_for:
        headers.append((b"x-forwarded-for", forwarded_for.encode()))
    if token:
        headers.append((b"authorization", f"Bearer {token}".encode()))
    return Request({"type": "http", "client": (client_ip, 4321), "headers": headers})


class TestAuthentication:
    def test_missing_token(self, client):
        response = client.get("/jobs")
        assert response.status_code == 401
        assert "Not authenticated" in response.json()["detail"]

    def test_garbage_token(self, client):
        response = client.get("/jobs", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_expired_token(self, client, parties):
        token = create_access_token(parties["client"], get_settings(), timedelta(minutes=-1))
        response = client.get("/jobs", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_wrong_token_type(self, client, parties):
        settings = get_settings()
        token = jwt.encode(
            {
                "sub": parties["client"],
                "type": "refresh",
                "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
            },
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm,
        )
        response = client.get("/jobs", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token payload"

    def test_token_signed_with_other_key(self, client, parties):
        token = jwt.encode({"sub": parties["client"], "type": "access"}, "other", algorithm="HS256")
        response = client.get("/jobs", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_valid_token(self, client, client_headers):
        response = client.get("/jobs", headers=client_headers)
        assert response.status_code == 200
        assert response.json() == {"listings": [], "total": 0}

    def test_decode_round_trip(self, parties):
        settings = get_settings()
        payload = decode_token(create_access_token(parties["freelancer"], settings), settings)
        assert payload["sub"] == parties["freelancer"]
        assert payload["type"] == "access"

    def test_decode_rejects_garbage(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token("nope", get_settings())
        assert exc_info.value.status_code == 401


class TestAppRoutes:
    def test_root(self, client):
        data = client.get("/").json()
        assert data["service"] == "checkpay-backend"
        assert data["status"] == "ok"

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["assets"] == ["FLR", "FXRP", "testUSDT"]


class TestDevRoutes:
    def test_issue_token(self, client, parties):
        response = client.post("/dev/token", json={"party_id": parties["stranger"]})
        assert response.status_code == 200
        token = response.json()["access_token"]

        listed = client.get("/jobs", headers={"Authorization": f"Bearer {token}"})
        assert listed.status_code == 200

    def test_mint(self, client, services, parties):
        response = client.post(
            "/dev/mint",
            json={"party_id": parties["stranger"], "asset": "fxrp", "amount": "2.5"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "party_id": parties["stranger"],
            "asset": "FXRP",
            "balance": "2500000",
        }
        assert services.ledger.get_balance(parties["stranger"], "FXRP") == 2_500_000

    def test_mint_unknown_asset(self, client, parties):
        response = client.post(
            "/dev/mint", json={"party_id": parties["stranger"], "asset": "DOGE", "amount": "1"}
        )
        assert response.status_code == 400


class TestClientIp:
    def test_direct_client(self):
        assert get_client_ip(make_request("203.0.113.7")) == "203.0.113.7"

    def test_untrusted_forwarded_header_ignored(self):
        request = make_request("203.0.113.7", forwarded_for="198.51.100.1")
        assert get_client_ip(request) == "203.0.113.7"

    def test_trusted_proxy_forwards(self):
        request = make_request("10.0.0.5", forwarded_for="198.51.100.1, 10.0.0.5")
        assert get_client_ip(request) == "198.51.100.1"


class TestPartyKey:
    def test_keyed_on_token_party(self, parties):
        token = create_access_token(parties["client"], get_settings())
        assert get_party_key(make_request("203.0.113.7", token=token)) == f"party:{parties['client']}"

    def test_same_party_from_two_addresses(self, parties):
        token = create_access_token(parties["freelancer"], get_settings())
        first = get_party_key(make_request("203.0.113.7", token=token))
        second = get_party_key(make_request("198.51.100.9", token=token))
        assert first == second

    def test_address_case_shares_a_bucket(self, parties):
        settings = get_settings()
        upper = create_access_token(parties["client"].upper().replace("0X", "0x"), settings)
        lower = create_access_token(parties["client"], settings)
        assert get_party_key(make_request("203.0.113.7", token=upper)) == get_party_key(
            make_request("203.0.113.7", token=lower)
        )

    def test_missing_token_falls_back_to_ip(self):
        assert get_party_key(make_request("203.0.113.7")) == "ip:203.0.113.7"

    def test_invalid_token_falls_back_to_ip(self, parties):
        forged = jwt.encode({"sub": parties["client"], "type": "access"}, "other", algorithm="HS256")
        assert get_party_key(make_request("203.0.113.7", token="not-a-jwt")) == "ip:203.0.113.7"
        assert get_party_key(make_request("203.0.113.7", token=forged)) == "ip:203.0.113.7"

    def test_fallback_honours_trusted_proxy(self):
        request = make_request("10.0.0.5", forwarded_for="198.51.100.1")
        assert get_party_key(request) == "ip:198.51.100.1"


class TestAddressCase:
    def test_checksummed_client_token_approves(self, client, create_job, apply, parties):
        job = create_job()
        apply(job["job_id"])
        checksummed = parties["client"].upper().replace("0X", "0x")
        headers = {"Authorization": f"Bearer {create_access_token(checksummed, get_settings())}"}

        response = client.post(f"/jobs/{job['job_id']}/applications/0/approve", headers=headers)

        assert response.status_code == 200
        assert response.json()["escrow_id"]
