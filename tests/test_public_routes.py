from urllib.parse import parse_qs, urlparse

import pytest

from models import DownloadOtp, Membership
from utils import download_otp

JOIN_FORM = {
    "full_name": "Ravi Kumar",
    "father_name": "Mohan Kumar",
    "mobile": "+91 98765-43210",
    "email": "ravi@example.org",
    "district": "sitamarhi",
    "block": "Riga",
    "reason": "I want to help people in my block with legal awareness.",
    "agree_terms": True,
}


def test_health_and_security_headers(client):
    response = client.get("/health")
    assert response.get_json() == {"status": "ok", "locations": True}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "SAMEORIGIN"


def test_join_creates_pending_application(client):
    response = client.post("/join", json=JOIN_FORM)
    assert response.status_code == 201
    body = response.get_json()
    assert body["status"] == "pending"

    stored = Membership.query.filter_by(id=body["id"]).one()
    assert (stored.division, stored.district, stored.block, stored.level) == ("Tirhut", "Sitamarhi", "Riga", "block")
    assert stored.agreed_to_terms is True


@pytest.mark.parametrize(
    "field, value, message",
    [
        ("agree_terms", False, "I agree to the terms"),
        ("mobile", "12", "Mobile"),
        ("district", "Gotham", "Please select a valid district"),
        ("team_type", "royal", "Invalid team type"),
        ("reason", "short", "Reason for joining"),
    ],
)
def test_join_validation(client, field, value, message):
    response = client.post("/join", json={**JOIN_FORM, field: value})
    assert response.status_code == 400
    assert message in response.get_json()["error"]
    assert Membership.query.count() == 0


def test_verify_membership(client, accepted_member):
    valid = client.get(f"/verify/{accepted_member.membership_id}").get_json()
    assert valid["valid"] is True
    assert valid["membership"]["full_name"] == "Sunita Devi"
    assert client.get("/verify/RMAS/BIH/KAT/1999/001").get_json() == {"valid": False, "membership": None}


def test_location_endpoints(client):
    assert client.get("/api/locations/divisions?state=Bihar").get_json()["items"] == ["Tirhut", "Patna", "Purnia", "Munger"]
    assert client.get("/api/locations/districts?division=Tirhut").get_json()["items"] == ["Muzaffarpur", "Sitamarhi"]
    assert client.get("/api/locations/blocks?district=Katihar").get_json()["items"] == ["Barsoi", "Kadwa"]
    assert client.get("/api/locations/blocks?district=Nowhere").get_json()["items"] == []


def test_location_endpoints_when_data_unavailable(app, client, tmp_path):
    hierarchy = app.extensions["location_hierarchy"]
    hierarchy.path = str(tmp_path / "missing.json")
    assert hierarchy.reload() is False
    response = client.get("/api/locations/districts?division=Tirhut")
    assert response.status_code == 500
    assert response.get_json() == {"ok": False, "error": "Location data is temporarily unavailable"}
    assert client.get("/health").get_json()["locations"] is False


@pytest.fixture
def fixed_otp(monkeypatch):
    monkeypatch.setattr(download_otp, "generate_otp", lambda length=6: "555123")
    return "555123"


def test_document_download_flow(client, accepted_member, fixed_otp):
    requested = client.post("/documents/request-download", json={"email": "member@example.org", "name": "Sunita Devi"})
    assert requested.status_code == 200
    assert requested.get_json()["message"] == download_otp.REQUEST_ACCEPTED_MESSAGE

    verified = client.post("/documents/verify-otp", json={"email": "member@example.org", "otp": fixed_otp})
    assert verified.status_code == 302
    location = urlparse(verified.headers["Location"])
    assert location.path == "/documents/profile"
    token = parse_qs(location.query)["token"][0]

    profile = client.get(f"/documents/profile?token={token}").get_json()
    assert profile["member"]["membership_id"] == accepted_member.membership_id

    pdf = client.post("/documents/generate", json={"token": token, "type": "idcard"})
    assert pdf.status_code == 200
    assert pdf.mimetype == "application/pdf"
    assert pdf.headers["Content-Disposition"].startswith("attachment;")
    assert "RMAS_IDCard_" in pdf.headers["Content-Disposition"]
    assert pdf.headers["Cache-Control"] == "no-store"
    assert pdf.data.startswith(b"%PDF")


def test_unknown_email_gets_the_same_answer(client, accepted_member):
    response = client.post("/documents/request-download", json={"email": "nobody@example.org"})
    assert response.status_code == 200
    assert response.get_json()["message"] == download_otp.REQUEST_ACCEPTED_MESSAGE
    assert DownloadOtp.query.count() == 0


def test_download_errors(client, accepted_member):
    missing = client.post("/documents/request-download", json={})
    assert missing.status_code == 400
    assert missing.get_json()["error"] == "Email: Email is required"

    wrong = client.post("/documents/verify-otp", json={"email": "member@example.org", "otp": "999999"})
    assert wrong.status_code == 400
    assert wrong.get_json()["error"] == download_otp.INVALID_OTP_MESSAGE

    bad_token = client.get("/documents/profile?token=forged")
    assert bad_token.status_code == 400
    assert bad_token.get_json()["error"] == download_otp.INVALID_TOKEN_MESSAGE

    no_token = client.post("/documents/generate", json={"type": "joining"})
    assert no_token.status_code == 400
    assert no_token.get_json()["error"] == "Token: Token required"


def test_download_requests_are_rate_limited(app, client, accepted_member):
    for _ in range(app.config["OTP_REQUESTS_PER_WINDOW"]):
        assert client.post("/documents/request-download", json={"email": "member@example.org"}).status_code == 200
    throttled = client.post("/documents/request-download", json={"email": "member@example.org"})
    assert throttled.status_code == 429
