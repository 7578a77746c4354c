"""Request authentication for deploy webhooks.

A deploy request is signed by the sender with the target's shared secret.
The string-to-sign binds the timestamp, the claimed repository, the run id,
a hash of the canonical request (path plus sorted query string) and a hash
of the bundle body. Verification order is identity, then integrity, then
freshness, so each rejection is distinguishable in the logs.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

import structlog

from deploy_agent.core.config import TargetRegistry
from deploy_agent.core.exceptions import (
    SignatureExpiredError,
    SignatureMismatchError,
    UnknownTargetError,
)
from deploy_agent.core.models import Target

logger = structlog.get_logger()

SIGNATURE_ALGORITHM = "Deploy-HMAC-SHA256"

HEADER_REPOSITORY = "x-webhook-repository"
HEADER_RUN_ID = "x-webhook-run-id"
HEADER_TIMESTAMP = "x-webhook-timestamp"
HEADER_SIGNATURE = "x-webhook-signature"

DEFAULT_MAX_AGE_SECONDS = 60


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


_FORM_SAFE = frozenset(
    b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789*-._"
)


def _form_quote(value, safe="", encoding=None, errors=None) -> str:
    """Percent-encode as application/x-www-form-urlencoded (WHATWG URL)."""
    if isinstance(value, str):
        value = value.encode("utf-8")
    return "".join(
        chr(byte) if byte in _FORM_SAFE else "+" if byte == 0x20 else "%%%02X" % byte
        for byte in value
    )


def canonical_query(query: str) -> str:
    """Sort query parameters by key so client ordering does not matter.

    Keys compare by UTF-16 code units and the sort is stable, so repeated
    keys keep their relative order. Serialization follows the form encoder
    used by browsers and Node (``*`` kept, ``~`` encoded, space as ``+``).
    """
    pairs = parse_qsl(query or "", keep_blank_values=True)
    pairs.sort(key=lambda pair: pair[0].encode("utf-16-be", "surrogatepass"))
    return urlencode(pairs, quote_via=_form_quote)


def canonical_request(path: str, query: str) -> str:
    return "\n".join([path, canonical_query(query)])


def string_to_sign(
    timestamp: str,
    repository: str,
    run_id: str,
    path: str,
    query: str,
    body: bytes,
) -> str:
    return "\n".join([
        SIGNATURE_ALGORITHM,
        timestamp,
        repository,
        run_id,
        _sha256_hex(canonical_request(path, query).encode("utf-8")),
        _sha256_hex(body),
    ])


def compute_signature(
    secret: bytes,
    timestamp: str,
    repository: str,
    run_id: str,
    path: str,
    query: str,
    body: bytes,
) -> str:
    """Lowercase hex HMAC-SHA256 of the string-to-sign."""
    message = string_to_sign(timestamp, repository, run_id, path, query, body)
    return hmac.new(secret, message.encode("utf-8"), hashlib.sha256).hexdigest()


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SignedRequest:
    """The parts of an inbound request that take part in the signature."""

    path: str
    query: str
    body: bytes
    repository: str = ""
    run_id: str = ""
    timestamp: str = ""
    signature: str = ""

    @classmethod
    def from_headers(cls, path: str, query: str, body: bytes, headers: Mapping[str, str]) -> "SignedRequest":
        return cls(
            path=path,
            query=query,
            body=body,
            repository=headers.get(HEADER_REPOSITORY) or "",
            run_id=headers.get(HEADER_RUN_ID) or "",
            timestamp=headers.get(HEADER_TIMESTAMP) or "",
            signature=headers.get(HEADER_SIGNATURE) or "",
        )


class Authenticator:
    """Verifies target identity, signature and freshness of a deploy request."""

    def __init__(
        self,
        registry: TargetRegistry,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry = registry
        self.max_age_seconds = max_age_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def authenticate(self, request: SignedRequest) -> Tuple[Target, str]:
        """Return the matching target and run id, or raise an AuthenticationError.

        Raises:
            UnknownTargetError: repository id matches no configured target
            SignatureMismatchError: signature does not verify
            SignatureExpiredError: timestamp is missing, invalid or too old
        """
        target = self.registry.find(request.repository)
        if target is None:
            logger.warning("Unknown repository", repository=request.repository)
            raise UnknownTargetError()

        expected = compute_signature(
            target.shared_secret,
            request.timestamp,
            request.repository,
            request.run_id,
            request.path,
            request.query,
            request.body,
        )
        if not hmac.compare_digest(expected.encode("ascii"), request.signature.encode("utf-8")):
            logger.warning("Signature mismatch", repository=target.repository, run_id=request.run_id)
            raise SignatureMismatchError()

        signed_at = parse_timestamp(request.timestamp)
        if signed_at is None:
            logger.warning("Unparseable signature timestamp", timestamp=request.timestamp)
            raise SignatureExpiredError()

        age = (self._clock() - signed_at).total_seconds()
        if age > self.max_age_seconds:
            logger.warning(
                "Signature expired",
                repository=target.repository,
                age_seconds=age,
                max_age_seconds=self.max_age_seconds,
            )
            raise SignatureExpiredError()

        logger.info("Request authenticated", repository=target.repository, run_id=request.run_id)
        return target, request.run_id
