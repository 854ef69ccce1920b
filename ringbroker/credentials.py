"""Credential authority: bearer tokens, device tokens and elevation codes.

Raw credentials are returned exactly once, at issuance; storage keeps only
their SHA-256 digests. Expiry is enforced at validation time against the
record's ``expires_at`` and storage TTLs only reclaim space. Every path
that resolves a credential to an agent re-checks the agent's delegation,
so a token can be unexpired and still refused.
"""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger

from . import crypto
from .config import Settings
from .errors import BrokerError, Conflict, DelegationInvalid, Forbidden, NotFound, Unauthenticated, Unavailable
from .models import (
    BearerToken,
    CredentialKind,
    DeviceChallenge,
    DeviceToken,
    ElevationCode,
    iso,
    normalize_principal,
    parse_iso,
    utcnow,
)
from .notifications import DeliveryResult, Notifier
from .persona import PersonaAuthority
from .rings import RingMembership
from .storage import StorageAdapter, list_add, load_list


@dataclass
class IssuedBearerToken:
    token: str
    token_id: str
    principal: str
    client_id: str
    client_type: str
    expires_at: str


@dataclass
class IssuedDevice:
    device_id: str
    device_token: str
    principal: str
    expires_at: str


@dataclass
class IssuedElevationCode:
    code: str
    expires_at: str


@dataclass
class ChallengeReceipt:
    challenge_id: str
    principal: str
    expires_at: str
    delivery_method: str
    delivered: bool
    error: str | None = None


@dataclass
class Resolution:
    """Outcome of resolving one raw credential string."""

    principal: str | None = None
    kind: CredentialKind | None = None
    ring_id: str | None = None
    error: BrokerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.principal is not None

    def unwrap(self) -> str:
        if self.error is not None:
            raise self.error
        if self.principal is None:
            raise Unauthenticated("Authentication required")
        return self.principal


class CredentialAuthority:
    def __init__(
        self,
        storage: StorageAdapter,
        persona: PersonaAuthority,
        rings: RingMembership,
        settings: Settings,
        sms_sender: Notifier | None = None,
        email_sender: Notifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._storage = storage
        self._persona = persona
        self._rings = rings
        self._settings = settings
        self._sms = sms_sender
        self._email = email_sender
        self._clock = clock

    def _expired(self, expires_at: str) -> bool:
        return parse_iso(expires_at) <= self._clock()

    def check_delegation(self, principal: str) -> None:
        """Refuse agents whose sponsorship is no longer live."""
        account = self._persona.get_account(principal)
        if account is not None and account.is_agent and not self._persona.is_delegation_valid(principal):
            logger.warning(f"Credential for agent {principal} refused: delegation no longer valid")
            raise DelegationInvalid(f"Delegation for agent {principal} is no longer valid")

    # ── Elevation codes ────────────────────────────────────────────

    def issue_elevation_code(self, fragment: str) -> IssuedElevationCode:
        """Trade a fragment of the architect passphrase for a one-time code."""
        passphrase = self._settings.architect_passphrase
        if not passphrase:
            raise Unavailable("Elevation is not configured")
        candidate = (fragment or "").strip().lower()
        if len(candidate) < self._settings.elevation_min_fragment or candidate not in passphrase.lower():
            logger.warning("Elevation refused: passphrase fragment did not match")
            raise Unauthenticated("Passphrase fragment does not match")

        code = crypto.generate_elevation_code()
        now = self._clock()
        ttl = timedelta(minutes=self._settings.elevation_ttl_minutes)
        record = ElevationCode(
            code_hash=crypto.hash_token(code),
            created_at=iso(now),
            expires_at=iso(now + ttl),
        )
        self._storage.set(f"elevation:{record.code_hash}", record.to_json(), ttl=ttl.total_seconds())
        logger.info(f"Elevation code issued, expires {record.expires_at}")
        return IssuedElevationCode(code=code, expires_at=record.expires_at)

    def redeem_elevation_code(self, code: str) -> ElevationCode:
        """Consume a code. The code is gone after this call whatever happens next."""
        if not code:
            raise Unauthenticated("Elevation code is required")
        raw = self._storage.pop(f"elevation:{crypto.hash_token(code)}")
        if raw is None:
            raise Unauthenticated("Elevation code is invalid or has already been used")
        record = ElevationCode.from_json(raw)
        if self._expired(record.expires_at):
            raise Unauthenticated("Elevation code has expired")
        return record

    # ── Bearer tokens ──────────────────────────────────────────────

    def issue_bearer_token(
        self,
        principal: str,
        client_id: str,
        client_type: str = "generic",
        expires_in_days: int | None = None,
        *,
        elevation_code: str,
    ) -> IssuedBearerToken:
        self.redeem_elevation_code(elevation_code)

        principal = normalize_principal(principal)
        if principal is None:
            raise Conflict("principal is required")
        if not client_id or not client_id.strip():
            raise Conflict("client_id is required")
        self.check_delegation(principal)

        days = expires_in_days or self._settings.bearer_ttl_days
        if days <= 0:
            raise Conflict("expires_in_days must be positive")
        raw = crypto.generate_bearer_token()
        token_hash = crypto.hash_token(raw)
        now = self._clock()
        ttl = timedelta(days=days)
        record = BearerToken(
            token_id=f"tok-{uuid.uuid4().hex[:16]}",
            principal=principal,
            client_id=client_id.strip(),
            client_type=client_type or "generic",
            issued_at=iso(now),
            expires_at=iso(now + ttl),
        )
        self._storage.set(f"bearer:{token_hash}", record.to_json(), ttl=ttl.total_seconds())
        self._storage.set(f"bearer-id:{record.token_id}", token_hash, ttl=ttl.total_seconds())
        logger.info(f"Bearer token {record.token_id} issued to {principal} for {record.client_id} ({days} days)")
        return IssuedBearerToken(
            token=raw,
            token_id=record.token_id,
            principal=principal,
            client_id=record.client_id,
            client_type=record.client_type,
            expires_at=record.expires_at,
        )

    def validate_bearer_token(self, raw: str) -> BearerToken:
        if not raw:
            raise Unauthenticated("Bearer token is required")
        stored = self._storage.get(f"bearer:{crypto.hash_token(raw)}")
        if stored is None:
            raise Unauthenticated("Invalid bearer token")
        record = BearerToken.from_json(stored)
        if record.revoked:
            raise Unauthenticated("Bearer token has been revoked")
        if self._expired(record.expires_at):
            raise Unauthenticated("Bearer token has expired")
        self.check_delegation(record.principal)
        return record

    def revoke_bearer_token(self, raw: str) -> bool:
        return self._revoke_bearer_hash(crypto.hash_token(raw)) if raw else False

    def revoke_bearer_token_id(self, token_id: str) -> bool:
        token_hash = self._storage.get(f"bearer-id:{token_id}")
        return self._revoke_bearer_hash(token_hash) if token_hash else False

    def _revoke_bearer_hash(self, token_hash: str) -> bool:
        revoked = []

        def fn(raw):
            if raw is None:
                return None
            record = BearerToken.from_json(raw)
            revoked.append(record.token_id)
            record.revoked = True
            return record.to_json()

        self._storage.update(f"bearer:{token_hash}", fn)
        if revoked:
            logger.info(f"Bearer token {revoked[0]} revoked")
        return bool(revoked)

    # ── Device tokens ──────────────────────────────────────────────

    async def begin_device_challenge(
        self,
        principal: str,
        fingerprint: dict | str,
        *,
        phone_number: str | None = None,
        email: str | None = None,
        prefer_sms: bool = True,
    ) -> ChallengeReceipt:
        """Store a short numeric code and deliver it out of band.

        Delivery tries SMS then email (or the reverse); a failed or timed
        out delivery is reported on the receipt, never raised.
        """
        principal = normalize_principal(principal)
        if principal is None:
            raise Conflict("principal is required")
        if not fingerprint:
            raise Conflict("device fingerprint is required")
        self.check_delegation(principal)

        code = crypto.generate_numeric_code(self._settings.challenge_code_length)
        challenge_id = uuid.uuid4().hex
        now = self._clock()
        ttl = timedelta(minutes=self._settings.challenge_ttl_minutes)
        challenge = DeviceChallenge(
            challenge_id=challenge_id,
            principal=principal,
            code_hash=crypto.hash_token(f"{challenge_id}:{code}"),
            fingerprint_hash=crypto.fingerprint_hash(fingerprint),
            created_at=iso(now),
            expires_at=iso(now + ttl),
        )
        self._storage.set(f"2fa-challenge:{challenge_id}", challenge.to_json(), ttl=ttl.total_seconds())

        message = (
            f"Your ringbroker verification code is {code}. "
            f"It expires in {self._settings.challenge_ttl_minutes} minutes."
        )
        channels = [("sms", self._sms, phone_number), ("email", self._email, email)]
        if not prefer_sms:
            channels.reverse()

        method, result = "manual", DeliveryResult(success=False, error="No delivery channel available")
        for name, sender, destination in channels:
            if sender is None or not destination:
                continue
            method, result = name, await self._deliver(sender, destination, message)
            if result.success:
                break

        def record_method(raw):
            if raw is None:
                return None
            stored = DeviceChallenge.from_json(raw)
            stored.delivery_method = method
            return stored.to_json()

        self._storage.update(f"2fa-challenge:{challenge_id}", record_method)
        if not result.success:
            logger.warning(f"2FA code for {principal} was not delivered: {result.error}")
        return ChallengeReceipt(
            challenge_id=challenge_id,
            principal=principal,
            expires_at=challenge.expires_at,
            delivery_method=method,
            delivered=result.success,
            error=result.error,
        )

    async def _deliver(self, sender: Notifier, destination: str, message: str) -> DeliveryResult:
        budget = self._settings.notification_timeout_seconds * self._settings.notification_max_attempts
        try:
            return await asyncio.wait_for(sender.send(destination, message), timeout=budget)
        except asyncio.TimeoutError:
            return DeliveryResult(success=False, error=f"Delivery timed out after {budget:g}s")

    def verify_device_challenge(self, challenge_id: str, code: str) -> IssuedDevice:
        """Check a 2FA code and, on success, register the device.

        The challenge is deleted on success, on expiry and once the attempt
        limit is reached, so it can never be replayed.
        """
        if not challenge_id or not code:
            raise Unauthenticated("Challenge id and code are required")
        max_attempts = self._settings.challenge_max_attempts
        outcome: dict = {}

        def fn(raw):
            if raw is None:
                outcome["status"] = "missing"
                return None
            challenge = DeviceChallenge.from_json(raw)
            outcome["challenge"] = challenge
            if self._expired(challenge.expires_at):
                outcome["status"] = "expired"
                return None
            if challenge.attempts >= max_attempts:
                outcome["status"] = "exhausted"
                return None
            challenge.attempts += 1
            if crypto.tokens_match(f"{challenge_id}:{code.strip()}", challenge.code_hash):
                outcome["status"] = "ok"
                return None
            if challenge.attempts >= max_attempts:
                outcome["status"] = "exhausted"
                return None
            outcome["status"] = "invalid"
            outcome["remaining"] = max_attempts - challenge.attempts
            return challenge.to_json()

        self._storage.update(f"2fa-challenge:{challenge_id}", fn)
        status = outcome["status"]
        if status == "missing":
            raise Unauthenticated("Challenge not found or expired")
        if status == "expired":
            raise Unauthenticated("Verification code expired")
        if status == "exhausted":
            logger.warning(f"2FA challenge for {outcome['challenge'].principal} locked after {max_attempts} attempts")
            raise Unauthenticated("Too many attempts")
        if status == "invalid":
            raise Unauthenticated(f"Invalid code ({outcome['remaining']} attempt(s) left)")

        challenge = outcome["challenge"]
        self.check_delegation(challenge.principal)
        return self._register_device(challenge.principal, challenge.fingerprint_hash)

    def _register_device(self, principal: str, fingerprint_hash: str) -> IssuedDevice:
        raw = crypto.generate_bearer_token()
        now = self._clock()
        ttl = timedelta(days=self._settings.device_ttl_days)
        record = DeviceToken(
            device_id=f"device-{fingerprint_hash[:16]}-{uuid.uuid4().hex[:8]}",
            principal=principal,
            fingerprint_hash=fingerprint_hash,
            registered_at=iso(now),
            expires_at=iso(now + ttl),
            last_access_at=iso(now),
        )
        self._storage.set(f"device:{record.device_id}", record.to_json(), ttl=ttl.total_seconds())
        self._storage.set(f"device-token:{crypto.hash_token(raw)}", record.device_id, ttl=ttl.total_seconds())
        list_add(self._storage, f"device-index:{principal}", record.device_id)
        logger.info(f"Device {record.device_id} registered for {principal}")
        return IssuedDevice(
            device_id=record.device_id,
            device_token=raw,
            principal=principal,
            expires_at=record.expires_at,
        )

    def validate_device_token(self, raw: str) -> DeviceToken:
        if not raw:
            raise Unauthenticated("Device token is required")
        device_id = self._storage.get(f"device-token:{crypto.hash_token(raw)}")
        if device_id is None:
            raise Unauthenticated("Invalid device token")
        stored = self._storage.get(f"device:{device_id}")
        if stored is None:
            raise Unauthenticated("Invalid device token")
        record = DeviceToken.from_json(stored)
        if record.revoked:
            raise Unauthenticated("Device has been revoked")
        if self._expired(record.expires_at):
            raise Unauthenticated("Device token has expired")
        self.check_delegation(record.principal)

        now = iso(self._clock())

        def touch(raw):
            if raw is None:
                return None
            current = DeviceToken.from_json(raw)
            current.last_access_at = now
            return current.to_json()

        self._storage.update(f"device:{device_id}", touch)
        record.last_access_at = now
        return record

    def revoke_device(self, device_id: str, principal: str) -> bool:
        principal = normalize_principal(principal)
        now = iso(self._clock())

        def fn(raw):
            if raw is None:
                raise NotFound(f"Device {device_id} not found")
            record = DeviceToken.from_json(raw)
            if record.principal != principal:
                raise Forbidden("Devices can only be revoked by their owner")
            record.revoked = True
            record.revoked_at = now
            return record.to_json()

        self._storage.update(f"device:{device_id}", fn)
        logger.info(f"Device {device_id} revoked by {principal}")
        return True

    def list_devices(self, principal: str) -> list[DeviceToken]:
        principal = normalize_principal(principal)
        devices = []
        for device_id in load_list(self._storage, f"device-index:{principal}"):
            raw = self._storage.get(f"device:{device_id}")
            if raw is not None:
                devices.append(DeviceToken.from_json(raw))
        return devices

    # ── Resolution ─────────────────────────────────────────────────

    def resolve_credential(self, raw: str | None) -> Resolution:
        """Resolve one opaque credential string.

        Kinds are tried in a fixed order: device token, then bearer token.
        The first kind that recognises the string decides the outcome.
        """
        if not raw:
            return Resolution(error=Unauthenticated("Authentication required"))
        token_hash = crypto.hash_token(raw)
        attempts = (
            (CredentialKind.DEVICE, f"device-token:{token_hash}", self.validate_device_token),
            (CredentialKind.BEARER, f"bearer:{token_hash}", self.validate_bearer_token),
        )
        for kind, index_key, validate in attempts:
            if self._storage.get(index_key) is None:
                continue
            try:
                principal = validate(raw).principal
            except BrokerError as e:
                return Resolution(kind=kind, error=e)
            return Resolution(
                principal=principal,
                kind=kind,
                ring_id=self._rings.ring_for_principal(principal),
            )
        return Resolution(error=Unauthenticated("Invalid credential"))

    # ── Housekeeping ───────────────────────────────────────────────

    def sweep(self) -> int:
        removed = self._storage.sweep()
        if removed:
            logger.info(f"Sweep removed {removed} expired record(s)")
        return removed

    async def sweep_periodically(self, interval: float, stop: asyncio.Event | None = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            self.sweep()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
