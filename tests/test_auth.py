"""Tests for request signing and authentication."""

import dataclasses
from datetime import datetime, timedelta, timezone

import pytest

from deploy_agent.core.exceptions import (
    SignatureExpiredError,
    SignatureMismatchError,
    UnknownTargetError,
)
from deploy_agent.deploy.auth import (
    Authenticator,
    SignedRequest,
    canonical_query,
    compute_signature,
    parse_timestamp,
)


NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
SECRET = b"s3cret"


def iso(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def signed(
    repository="Acme/Web",
    run_id="101",
    timestamp=None,
    path="/",
    query="",
    body=b"PK-bundle",
    secret=SECRET,
    signature=None,
) -> SignedRequest:
    timestamp = iso(NOW) if timestamp is None else timestamp
    if signature is None:
        signature = compute_signature(secret, timestamp, repository, run_id, path, query, body)
    return SignedRequest(
        path=path,
        query=query,
        body=body,
        repository=repository,
        run_id=run_id,
        timestamp=timestamp,
        signature=signature,
    )


@pytest.fixture
def authenticator(registry):
    return Authenticator(registry, max_age_seconds=60, clock=lambda: NOW)


class TestSignature:

    def test_signature_is_deterministic(self):
        args = (SECRET, iso(NOW), "Acme/Web", "101", "/", "a=1", b"body")
        first = compute_signature(*args)
        assert first == compute_signature(*args)
        assert len(first) == 64
        assert first == first.lower()

    @pytest.mark.parametrize(
        "field, value",
        [
            ("timestamp", "2025-03-01T12:00:01.000Z"),
            ("repository", "Acme/Wed"),
            ("run_id", "102"),
            ("path", "/x"),
            ("query", "a=2"),
            ("body", b"bodz"),
        ],
    )
    def test_signature_changes_with_any_input(self, field, value):
        base = dict(timestamp=iso(NOW), repository="Acme/Web", run_id="101", path="/", query="a=1", body=b"body")
        changed = dict(base, **{field: value})
        assert compute_signature(SECRET, **base) != compute_signature(SECRET, **changed)

    def test_signature_depends_on_secret(self):
        args = (iso(NOW), "Acme/Web", "101", "/", "", b"body")
        assert compute_signature(b"one", *args) != compute_signature(b"two", *args)

    def test_query_order_does_not_matter(self):
        args = (SECRET, iso(NOW), "Acme/Web", "101", "/")
        assert compute_signature(*args, "b=2&a=1&c=", b"x") == compute_signature(*args, "a=1&c=&b=2", b"x")

    def test_canonical_query_sort_is_stable_for_repeated_keys(self):
        assert canonical_query("b=1&a=2&a=1") == "a=2&a=1&b=1"
        assert canonical_query("") == ""

    def test_canonical_query_uses_form_encoding(self):
        # Expected values as produced by URLSearchParams.sort().toString()
        assert canonical_query("b=~x&a=*") == "a=*&b=%7Ex"
        assert canonical_query("q=a b&p=x+y") == "p=x+y&q=a+b"
        assert canonical_query("k=%C3%A9!&j=(1)") == "j=%281%29&k=%C3%A9%21"


class TestAuthenticator:

    def test_valid_request(self, authenticator, target):
        found, run_id = authenticator.authenticate(signed())
        assert found is target
        assert run_id == "101"

    def test_repository_matched_case_insensitively(self, authenticator, target):
        found, _ = authenticator.authenticate(signed(repository="ACME/web"))
        assert found is target

    def test_unknown_repository(self, authenticator):
        with pytest.raises(UnknownTargetError):
            authenticator.authenticate(signed(repository="other/repo"))

    def test_missing_repository(self, authenticator):
        with pytest.raises(UnknownTargetError):
            authenticator.authenticate(signed(repository=""))

    def test_wrong_secret(self, authenticator):
        with pytest.raises(SignatureMismatchError):
            authenticator.authenticate(signed(secret=b"not-it"))

    def test_tampered_body(self, authenticator):
        request = signed()
        tampered = dataclasses.replace(request, body=b"PK-evil")
        with pytest.raises(SignatureMismatchError):
            authenticator.authenticate(tampered)

    def test_non_ascii_signature_is_a_mismatch(self, authenticator):
        with pytest.raises(SignatureMismatchError):
            authenticator.authenticate(signed(signature="é" * 64))

    def test_bad_signature_reported_before_expiry(self, authenticator):
        old = iso(NOW - timedelta(hours=1))
        with pytest.raises(SignatureMismatchError):
            authenticator.authenticate(signed(timestamp=old, signature="0" * 64))

    def test_request_59_seconds_old_is_accepted(self, authenticator):
        authenticator.authenticate(signed(timestamp=iso(NOW - timedelta(seconds=59))))

    def test_request_exactly_60_seconds_old_is_accepted(self, authenticator):
        authenticator.authenticate(signed(timestamp=iso(NOW - timedelta(seconds=60))))

    def test_request_61_seconds_old_is_expired(self, authenticator):
        with pytest.raises(SignatureExpiredError):
            authenticator.authenticate(signed(timestamp=iso(NOW - timedelta(seconds=61))))

    def test_unparseable_timestamp_is_expired(self, authenticator):
        with pytest.raises(SignatureExpiredError):
            authenticator.authenticate(signed(timestamp="yesterday"))

    def test_missing_timestamp_is_expired(self, authenticator):
        with pytest.raises(SignatureExpiredError):
            authenticator.authenticate(signed(timestamp=""))

    def test_from_headers(self):
        request = SignedRequest.from_headers(
            "/", "a=1", b"x",
            {
                "x-webhook-repository": "Acme/Web",
                "x-webhook-run-id": "7",
                "x-webhook-timestamp": "t",
                "x-webhook-signature": "sig",
            },
        )
        assert request.repository == "Acme/Web"
        assert request.run_id == "7"
        assert request.timestamp == "t"
        assert request.signature == "sig"


def test_parse_timestamp_variants():
    assert parse_timestamp("2025-03-01T12:00:00.000Z") == NOW
    assert parse_timestamp("2025-03-01T13:00:00+01:00") == NOW
    # Naive timestamps are UTC
    assert parse_timestamp("2025-03-01T12:00:00") == NOW
    assert parse_timestamp("not a date") is None
