from __future__ import annotations

import logging
import re
from typing import Iterable

from solders.pubkey import Pubkey
from solders.signature import Signature

from treasury_burn.common import log_event, now_ms as _now_ms

from .errors import AuthExpired, AuthInvalid, AuthMalformed
from .types import AUTH_WINDOW_MS, AuthorizationProof

TRAILING_TIMESTAMP_RE = re.compile(r"\bat (\d{10,16})$")
SIGNATURE_LENGTH = 64


def burn_message_prefix(intent_id: str) -> str:
    return f"Execute burn for intent {intent_id}"


def build_burn_message(intent_id: str, timestamp_ms: int) -> str:
    return f"{burn_message_prefix(intent_id)} at {timestamp_ms}"


class SignatureAuthenticator:
    """Checks that a detached Ed25519 signature proves control of the claimed wallet.

    Verification is pure: no I/O and no state. Marking the signature as used is
    the replay guard's job and must happen right after this check succeeds.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        window_ms: int = AUTH_WINDOW_MS,
        authorized_identities: Iterable[str] = (),
    ) -> None:
        self._logger = logger
        self._window_ms = max(1, window_ms)
        self._authorized = frozenset(identity.strip() for identity in authorized_identities if identity.strip())

    def verify(self, proof: AuthorizationProof, *, intent_id: str, now_ms: int | None = None) -> int:
        """Return the message timestamp (ms) when the proof is valid."""
        message = proof.message.strip()
        if not message.startswith(burn_message_prefix(intent_id) + " "):
            raise AuthMalformed("authorization message does not match the requested action")

        match = TRAILING_TIMESTAMP_RE.search(message)
        if match is None:
            raise AuthMalformed("authorization message lacks a trailing timestamp")
        timestamp_ms = int(match.group(1))
        if proof.message_timestamp_ms is not None and proof.message_timestamp_ms != timestamp_ms:
            raise AuthMalformed("authorization timestamp does not match the signed message")

        current_ms = _now_ms() if now_ms is None else now_ms
        if abs(current_ms - timestamp_ms) > self._window_ms:
            raise AuthExpired(
                f"authorization expired: signed {abs(current_ms - timestamp_ms) // 1000}s from now, "
                f"window is {self._window_ms // 1000}s"
            )

        if len(proof.signature) != SIGNATURE_LENGTH:
            raise AuthMalformed(f"signature must be {SIGNATURE_LENGTH} bytes")
        try:
            pubkey = Pubkey.from_string(proof.identity.strip())
        except Exception as error:
            raise AuthMalformed("identity is not a valid public key") from error

        signature = Signature.from_bytes(bytes(proof.signature))
        if not signature.verify(pubkey, proof.message.encode("utf-8")):
            log_event(
                self._logger,
                level="warning",
                event="auth_signature_invalid",
                message="Authorization signature failed verification",
                identity=str(pubkey),
                intent_id=intent_id,
            )
            raise AuthInvalid("signature verification failed")

        if self._authorized and str(pubkey) not in self._authorized:
            log_event(
                self._logger,
                level="warning",
                event="auth_identity_not_authorized",
                message="Signer is not allowed to trigger burns",
                identity=str(pubkey),
                intent_id=intent_id,
            )
            raise AuthInvalid("identity is not authorized to trigger burns")

        return timestamp_ms
