from datetime import datetime, timedelta

import pytest

from extensions import db
from models import AuditLog, DownloadOtp, MembershipHistory
from utils import download_otp, pdf_generator
from utils.errors import ExternalServiceError, RateLimitError, ValidationError
from utils.security import hash_value

EMAIL = "member@example.org"


@pytest.fixture
def clock(monkeypatch):
    class Clock(datetime):
        current = datetime.utcnow().replace(microsecond=0)

        @classmethod
        def utcnow(cls):
            return cls.current

    monkeypatch.setattr(download_otp, "datetime", Clock)
    return Clock


@pytest.fixture
def fixed_otp(monkeypatch):
    monkeypatch.setattr(download_otp, "generate_otp", lambda length=6: "482913")
    return "482913"


@pytest.fixture
def token(accepted_member, fixed_otp):
    download_otp.request_download(EMAIL, "Sunita Devi")
    return download_otp.verify_otp(EMAIL, fixed_otp)


def test_request_stores_only_a_hash(app, accepted_member, fixed_otp):
    message = download_otp.request_download(" Member@Example.org ", "sunita devi", ip_address="10.0.0.1")
    assert message == download_otp.REQUEST_ACCEPTED_MESSAGE

    record = DownloadOtp.query.filter_by(email=EMAIL).one()
    assert record.otp_hash == hash_value(fixed_otp)
    assert fixed_otp not in record.otp_hash
    assert record.membership_ref == accepted_member.id
    assert record.verified is False
    assert record.ip_address == "10.0.0.1"
    assert AuditLog.query.filter_by(action="download_otp_requested").count() == 1


def test_unknown_email_and_name_mismatch_look_like_success(app, accepted_member):
    assert download_otp.request_download("stranger@example.org") == download_otp.REQUEST_ACCEPTED_MESSAGE
    assert download_otp.request_download(EMAIL, "Someone Else") == download_otp.REQUEST_ACCEPTED_MESSAGE
    assert DownloadOtp.query.count() == 0


def test_pending_applicants_get_no_code(app, make_application):
    make_application(email="pending@example.org")
    download_otp.request_download("pending@example.org")
    assert DownloadOtp.query.count() == 0


def test_missing_email_is_rejected(app):
    with pytest.raises(ValidationError, match="Email is required"):
        download_otp.request_download("  ")


def test_requests_are_throttled_per_email(app, accepted_member, clock):
    for _ in range(app.config["OTP_REQUESTS_PER_WINDOW"]):
        download_otp.request_download(EMAIL)
    with pytest.raises(RateLimitError):
        download_otp.request_download(EMAIL)

    clock.current += timedelta(minutes=app.config["OTP_REQUEST_WINDOW_MINUTES"] + 1)
    download_otp.request_download(EMAIL)


def test_verify_exchanges_otp_for_token(app, accepted_member, fixed_otp):
    download_otp.request_download(EMAIL)
    token = download_otp.verify_otp(EMAIL, fixed_otp)

    record = DownloadOtp.query.filter_by(email=EMAIL).one()
    assert record.verified is True
    assert record.token_hash == hash_value(token)
    assert record.token_expires > record.verified_at
    assert AuditLog.query.filter_by(action="download_otp_verified").count() == 1


def test_second_verify_with_same_code_fails(app, accepted_member, fixed_otp):
    download_otp.request_download(EMAIL)
    download_otp.verify_otp(EMAIL, fixed_otp)
    with pytest.raises(ValidationError, match=download_otp.INVALID_OTP_MESSAGE):
        download_otp.verify_otp(EMAIL, fixed_otp)


def test_concurrent_verify_has_one_winner(app, accepted_member, fixed_otp, monkeypatch):
    download_otp.request_download(EMAIL)
    stale = DownloadOtp.query.filter_by(email=EMAIL).one()
    download_otp.verify_otp(EMAIL, fixed_otp)

    # A second request that read the row before the first one committed.
    monkeypatch.setattr(download_otp, "_latest_live_otp", lambda email, now: stale)
    with pytest.raises(ValidationError, match=download_otp.INVALID_OTP_MESSAGE):
        download_otp.verify_otp(EMAIL, fixed_otp)
    assert DownloadOtp.query.filter_by(verified=True).count() == 1


def test_otp_expires_after_ttl(app, accepted_member, fixed_otp, clock):
    download_otp.request_download(EMAIL)
    clock.current += timedelta(minutes=11)
    with pytest.raises(ValidationError, match=download_otp.INVALID_OTP_MESSAGE):
        download_otp.verify_otp(EMAIL, fixed_otp)


def test_wrong_guesses_burn_the_code(app, accepted_member, fixed_otp, clock):
    download_otp.request_download(EMAIL)
    for _ in range(app.config["OTP_MAX_VERIFY_ATTEMPTS"]):
        with pytest.raises(ValidationError):
            download_otp.verify_otp(EMAIL, "000000")
    with pytest.raises(ValidationError):
        download_otp.verify_otp(EMAIL, fixed_otp)
    assert DownloadOtp.query.filter_by(verified=True).count() == 0
    assert AuditLog.query.filter_by(action="download_otp_rejected").count() == app.config["OTP_MAX_VERIFY_ATTEMPTS"] + 1


def test_only_the_newest_code_is_accepted(app, accepted_member, monkeypatch, clock):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(download_otp, "generate_otp", lambda length=6: next(codes))
    download_otp.request_download(EMAIL)
    clock.current += timedelta(seconds=30)
    download_otp.request_download(EMAIL)

    with pytest.raises(ValidationError):
        download_otp.verify_otp(EMAIL, "111111")
    assert download_otp.verify_otp(EMAIL, "222222")


def test_superseded_code_cannot_mint_a_second_token(app, accepted_member, monkeypatch, clock):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(download_otp, "generate_otp", lambda length=6: next(codes))
    download_otp.request_download(EMAIL)
    clock.current += timedelta(seconds=30)
    download_otp.request_download(EMAIL)

    assert download_otp.verify_otp(EMAIL, "222222")
    with pytest.raises(ValidationError, match=download_otp.INVALID_OTP_MESSAGE):
        download_otp.verify_otp(EMAIL, "111111")
    assert DownloadOtp.query.filter_by(verified=True).count() == 1


def test_superseded_code_stays_dead_after_newer_code_is_burned(app, accepted_member, monkeypatch, clock):
    codes = iter(["111111", "222222"])
    monkeypatch.setattr(download_otp, "generate_otp", lambda length=6: next(codes))
    download_otp.request_download(EMAIL)
    clock.current += timedelta(seconds=30)
    download_otp.request_download(EMAIL)

    for _ in range(app.config["OTP_MAX_VERIFY_ATTEMPTS"]):
        with pytest.raises(ValidationError):
            download_otp.verify_otp(EMAIL, "000000")
    with pytest.raises(ValidationError, match=download_otp.INVALID_OTP_MESSAGE):
        download_otp.verify_otp(EMAIL, "111111")
    assert DownloadOtp.query.filter_by(verified=True).count() == 0


def test_profile_snapshot(app, accepted_member, token):
    snapshot = download_otp.profile_snapshot(token)
    assert snapshot["full_name"] == "Sunita Devi"
    assert snapshot["membership_id"] == accepted_member.membership_id
    assert snapshot["documents"] == ["joining", "idcard"]
    assert snapshot["designation"] == "Member"


def test_token_is_rejected_after_expiry(app, accepted_member, fixed_otp, clock):
    download_otp.request_download(EMAIL)
    token = download_otp.verify_otp(EMAIL, fixed_otp)
    download_otp.profile_snapshot(token)

    clock.current += timedelta(minutes=app.config["TOKEN_TTL_MINUTES"], seconds=1)
    with pytest.raises(ValidationError, match=download_otp.INVALID_TOKEN_MESSAGE):
        download_otp.profile_snapshot(token)
    with pytest.raises(ValidationError, match=download_otp.INVALID_TOKEN_MESSAGE):
        download_otp.generate_document(token, "joining")


def test_unknown_and_missing_tokens(app, accepted_member):
    with pytest.raises(ValidationError, match="Token required"):
        download_otp.profile_snapshot("")
    with pytest.raises(ValidationError, match=download_otp.INVALID_TOKEN_MESSAGE):
        download_otp.profile_snapshot("not-a-real-token")


@pytest.mark.parametrize(
    "doc_type, prefix, action",
    [("joining", "RMAS_Joining_", "joining_letter_downloaded"), ("idcard", "RMAS_IDCard_", "id_card_downloaded")],
)
def test_generate_documents(app, accepted_member, token, doc_type, prefix, action):
    filename, data = download_otp.generate_document(token, doc_type)
    assert filename.startswith(prefix) and filename.endswith("_001.pdf")
    assert "/" not in filename
    assert data.startswith(b"%PDF")

    entry = AuditLog.query.filter_by(action=action).one()
    assert entry.details["file_size"] == len(data)
    assert entry.details["email"] == EMAIL


def test_generate_rejects_unknown_type(app, token):
    with pytest.raises(ValidationError, match="Invalid document type"):
        download_otp.generate_document(token, "passport")


def test_generate_failure_is_recorded_and_reported_as_pending(app, accepted_member, token, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("font missing")

    monkeypatch.setattr(pdf_generator, "render_id_card", broken)
    with pytest.raises(ExternalServiceError) as excinfo:
        download_otp.generate_document(token, "idcard")
    assert excinfo.value.to_payload() == {"ok": False, "error": "Document pending, please retry"}

    history = MembershipHistory.query.filter_by(membership_ref=accepted_member.id, action="idcard_pdf_error").one()
    assert history.note == "ID card could not be generated"
    assert AuditLog.query.filter_by(action="document_download_failed").count() == 1


def test_purge_removes_only_dead_rows(app, accepted_member):
    now = datetime.utcnow()
    old = now - timedelta(minutes=app.config["OTP_REQUEST_WINDOW_MINUTES"] + 5)
    db.session.add_all(
        [
            DownloadOtp(email=EMAIL, otp_hash="a", expires_at=now - timedelta(minutes=1), created_at=old),
            DownloadOtp(email=EMAIL, otp_hash="b", expires_at=now + timedelta(minutes=5)),
            DownloadOtp(
                email=EMAIL,
                otp_hash="c",
                expires_at=now - timedelta(minutes=20),
                verified=True,
                token_hash="t1",
                token_expires=now - timedelta(minutes=1),
                created_at=old,
            ),
            DownloadOtp(
                email=EMAIL,
                otp_hash="d",
                expires_at=now - timedelta(minutes=5),
                verified=True,
                token_hash="t2",
                token_expires=now + timedelta(minutes=10),
                created_at=old,
            ),
            DownloadOtp(email=EMAIL, otp_hash="e", expires_at=now - timedelta(minutes=1), created_at=now - timedelta(minutes=11)),
        ]
    )
    db.session.commit()

    assert download_otp.purge_expired(now) == 2
    assert sorted(row.otp_hash for row in DownloadOtp.query) == ["b", "d", "e"]


def test_purge_does_not_reset_the_request_throttle(app, accepted_member, clock):
    for _ in range(app.config["OTP_REQUESTS_PER_WINDOW"]):
        download_otp.request_download(EMAIL)

    clock.current += timedelta(minutes=app.config["OTP_TTL_MINUTES"] + 1)
    assert download_otp.purge_expired(clock.current) == 0
    with pytest.raises(RateLimitError):
        download_otp.request_download(EMAIL)


def test_cleanup_command(app):
    result = app.test_cli_runner().invoke(args=["otp-cleanup"])
    assert result.exit_code == 0
    assert "Removed 0 expired download OTP records" in result.output
