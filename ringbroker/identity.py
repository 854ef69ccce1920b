"""Identity providers used to verify human principals."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass

import aiohttp
from loguru import logger

from .errors import Unauthenticated, Unavailable

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"
GOOGLE_ISSUERS = {"accounts.google.com", "https://accounts.google.com"}


@dataclass
class IdentityAssertion:
    email: str
    verified: bool
    provider_subject_id: str


class IdentityProvider(ABC):
    @abstractmethod
    async def exchange(self, artifact: str) -> IdentityAssertion:
        """Trade an authorization artifact for a verified identity."""


class GoogleIdentityProvider(IdentityProvider):
    """Validates Google ID tokens against the tokeninfo endpoint."""

    def __init__(self, client_id: str, timeout: float = 10.0, tokeninfo_url: str = GOOGLE_TOKENINFO_URL):
        self.client_id = client_id
        self.timeout = timeout
        self.tokeninfo_url = tokeninfo_url

    async def exchange(self, artifact: str) -> IdentityAssertion:
        if not artifact:
            raise Unauthenticated("Identity token is required")
        try:
            async with (
                aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session,
                session.get(self.tokeninfo_url, params={"id_token": artifact}) as resp,
            ):
                if resp.status != 200:
                    raise Unauthenticated("Identity token was rejected by the provider")
                claims = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Google tokeninfo request failed: {e}")
            raise Unavailable("Identity provider unreachable") from e

        if self.client_id and claims.get("aud") != self.client_id:
            raise Unauthenticated("Identity token was issued for a different client")
        if claims.get("iss") and claims["iss"] not in GOOGLE_ISSUERS:
            raise Unauthenticated("Identity token has an unexpected issuer")
        if not claims.get("email") or not claims.get("sub"):
            raise Unauthenticated("Identity token carries no email")

        verified = str(claims.get("email_verified", "")).lower() == "true"
        return IdentityAssertion(
            email=claims["email"].strip().lower(),
            verified=verified,
            provider_subject_id=claims["sub"],
        )
