"""Persona tiers and the human-to-agent delegation chain.

Tiers: anonymous → verified-human → delegated-agent. An agent only ever
acts under a live sponsorship: ``is_delegation_valid`` re-reads the sponsor
on every call, so clearing a human's verification immediately invalidates
every agent it sponsors. Agents never delegate (no transitive chains).
"""

from collections.abc import Callable
from datetime import datetime

from loguru import logger

from .errors import Conflict, Forbidden, NotFound
from .models import (
    EntityType,
    PersonaTier,
    PrincipalAccount,
    iso,
    normalize_principal,
    utcnow,
)
from .storage import StorageAdapter

VERIFICATION_METHODS = {"google", "microsoft"}


class PersonaAuthority:
    def __init__(self, storage: StorageAdapter, clock: Callable[[], datetime] = utcnow):
        self._storage = storage
        self._clock = clock

    @staticmethod
    def _key(principal: str) -> str:
        return f"persona:{principal}"

    def _mutate(self, principal: str, fn: Callable[[PrincipalAccount], None]) -> PrincipalAccount:
        """Apply ``fn`` to the account in one read-modify-write, creating it if absent."""
        now = iso(self._clock())

        def update(raw):
            account = (
                PrincipalAccount.from_json(raw)
                if raw
                else PrincipalAccount(identifier=principal, created_at=now)
            )
            fn(account)
            account.updated_at = now
            return account.to_json()

        return PrincipalAccount.from_json(self._storage.update(self._key(principal), update))

    # ── Accounts ───────────────────────────────────────────────────

    def get_account(self, principal: str | None) -> PrincipalAccount | None:
        principal = normalize_principal(principal)
        if principal is None:
            return None
        raw = self._storage.get(self._key(principal))
        return PrincipalAccount.from_json(raw) if raw else None

    def ensure_account(self, principal: str) -> PrincipalAccount:
        principal = normalize_principal(principal)
        if principal is None:
            raise Conflict("principal identifier is required")
        account = PrincipalAccount(identifier=principal, created_at=iso(self._clock()))
        account.updated_at = account.created_at
        self._storage.add(self._key(principal), account.to_json())
        return self.get_account(principal)

    def classify(self, principal: str | None) -> PersonaTier:
        account = self.get_account(principal)
        if account is None:
            return PersonaTier.ANONYMOUS
        if account.is_agent and account.delegated_by:
            return PersonaTier.DELEGATED_AGENT
        if not account.is_agent and account.verified:
            return PersonaTier.VERIFIED_HUMAN
        return PersonaTier.ANONYMOUS

    def reset_roles(self, principal: str) -> PrincipalAccount:
        """Soft delete: accounts are never removed, only stripped of roles."""
        principal = normalize_principal(principal)
        if self.get_account(principal) is None:
            raise NotFound(f"Account {principal} not found")

        def fn(account):
            account.roles = []

        logger.info(f"Roles reset for {principal}")
        return self._mutate(principal, fn)

    def record_anchor(self, principal: str, ring_id: str) -> PrincipalAccount:
        """Remember that ``principal`` was the first verified identity of ``ring_id``."""

        def fn(account):
            if ring_id not in account.anchored_rings:
                account.anchored_rings.append(ring_id)

        return self._mutate(normalize_principal(principal), fn)

    # ── Human verification ─────────────────────────────────────────

    def verify_human(self, principal: str, method: str, provider_id: str) -> PrincipalAccount:
        principal = normalize_principal(principal)
        if not principal or not method or not provider_id:
            raise Conflict("principal, verification method and provider id are required")
        if method not in VERIFICATION_METHODS:
            raise Conflict(f"Unsupported verification method: {method}")

        existing = self.get_account(principal)
        if existing is not None and existing.is_agent:
            raise Forbidden("Agent accounts cannot be verified; they must be delegated")

        now = iso(self._clock())

        def fn(account):
            account.verified = True
            account.verification_method = method
            account.verification_id = provider_id
            account.verified_at = now

        account = self._mutate(principal, fn)
        logger.info(f"Verified human {principal} via {method}")
        return account

    async def verify_with_provider(self, artifact: str, provider, method: str = "google") -> PrincipalAccount:
        """Exchange an identity-provider artifact and verify the asserted email."""
        assertion = await provider.exchange(artifact)
        if not assertion.verified:
            raise Forbidden("Identity provider reports the email as unverified")
        return self.verify_human(assertion.email, method, assertion.provider_subject_id)

    def clear_verification(self, principal: str) -> PrincipalAccount:
        principal = normalize_principal(principal)
        account = self.get_account(principal)
        if account is None:
            raise NotFound(f"Account {principal} not found")

        def fn(account):
            account.verified = False
            account.verification_method = None
            account.verification_id = None
            account.verified_at = None

        account = self._mutate(principal, fn)
        if account.delegated_agents:
            logger.warning(
                f"Verification cleared for {principal}; "
                f"{len(account.delegated_agents)} sponsored agent(s) now invalid"
            )
        return account

    # ── Delegation ─────────────────────────────────────────────────

    def can_delegate(self, principal: str | None) -> bool:
        account = self.get_account(principal)
        return (
            account is not None
            and not account.is_agent
            and account.verified
            and account.verification_method is not None
        )

    def delegate_agent(
        self, human: str, agent: str, capabilities: list[str] | None = None
    ) -> PrincipalAccount:
        human = normalize_principal(human)
        agent = normalize_principal(agent)
        if not human or not agent:
            raise Conflict("human and agent identifiers are required")
        if human == agent:
            raise Conflict("A principal cannot delegate to itself")

        sponsor = self.get_account(human)
        if sponsor is not None and sponsor.is_agent:
            raise Forbidden("Agents cannot delegate other agents")
        if not self.can_delegate(human):
            raise Forbidden("Only verified humans can delegate agents")

        existing = self.get_account(agent)
        if existing is not None and not existing.is_agent:
            raise Conflict(f"{agent} is a person account and cannot become an agent")
        if (
            existing is not None
            and existing.delegated_by not in (None, human)
            and not existing.delegation_revoked
        ):
            raise Conflict(f"{agent} is already delegated by another principal")

        now = iso(self._clock())

        def make_agent(account):
            account.entity_type = EntityType.AGENT.value
            account.delegated_by = human
            account.delegated_at = now
            account.delegation_revoked = False
            account.verified = False
            account.capabilities = list(capabilities or [])

        def track(account):
            if agent not in account.delegated_agents:
                account.delegated_agents.append(agent)

        result = self._mutate(agent, make_agent)
        self._mutate(human, track)
        logger.info(f"{human} delegated agent {agent}")
        return result

    def revoke_delegation(self, human: str, agent: str) -> PrincipalAccount:
        human = normalize_principal(human)
        agent = normalize_principal(agent)
        account = self.get_account(agent)
        if account is None or not account.is_agent:
            raise NotFound(f"Agent {agent} not found")
        if account.delegated_by != human:
            raise Forbidden("Only the sponsoring human can revoke this delegation")

        def fn(account):
            account.delegation_revoked = True

        result = self._mutate(agent, fn)
        logger.info(f"{human} revoked delegation of agent {agent}")
        return result

    def delegated_agents(self, human: str) -> list[PrincipalAccount]:
        account = self.get_account(human)
        if account is None:
            return []
        agents = (self.get_account(a) for a in account.delegated_agents)
        return [a for a in agents if a is not None and a.delegated_by == account.identifier]

    def is_delegation_valid(self, agent: str | None) -> bool:
        account = self.get_account(agent)
        if account is None or not account.is_agent:
            return False
        if not account.delegated_by or account.delegation_revoked:
            return False
        sponsor = self.get_account(account.delegated_by)
        return (
            sponsor is not None
            and not sponsor.is_agent
            and sponsor.verified
            and account.identifier in sponsor.delegated_agents
        )
