import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from jose import jwk, jwt
from jose.exceptions import JOSEError
from pydantic import SecretStr

from cred_tool.core.constants import (
    JWT_ALGORITHM,
    JWT_DEFAULT_CLOCK_SKEW_SECONDS,
    JWT_MAX_TTL_SECONDS,
)
from cred_tool.core.errors import ConfigurationError, KeyUnavailable, SigningFailure, TransportFailure
from cred_tool.core.retry import Clock
from cred_tool.models.credentials import AppIdentity, SignedAssertion
from cred_tool.models.pipeline import PipelineState

if TYPE_CHECKING:
    from cred_tool.core.config import Settings

logger = logging.getLogger(__name__)

_STAGE = PipelineState.SIGNING.value


class AssertionSigner(ABC):
    @abstractmethod
    async def sign(self, identity: AppIdentity, ttl: int) -> SignedAssertion:
        """
        Produce a fresh signed App assertion.
        :param identity: App id, key location and optional audience
        :param ttl: Lifetime of the assertion in seconds
        :return: SignedAssertion whose expires_at is issued_at + ttl
        """
        pass


class JoseSigner(AssertionSigner):
    """
    Signs GitHub App JWTs with python-jose (RS256).

    The key file is read on every call and never cached, logged or echoed.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        key_read_timeout: float = 5.0,
        clock_skew: int = JWT_DEFAULT_CLOCK_SKEW_SECONDS,
    ):
        self.clock = clock or Clock()
        self.key_read_timeout = key_read_timeout
        self.clock_skew = clock_skew

    @classmethod
    def from_settings(cls, settings: "Settings", clock: Optional[Clock] = None) -> "JoseSigner":
        return cls(
            clock=clock,
            key_read_timeout=settings.KEY_READ_TIMEOUT_SECONDS,
            clock_skew=settings.JWT_CLOCK_SKEW_SECONDS,
        )

    async def _read_key(self, key_path: str) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(Path(key_path).read_text, encoding="utf-8"),
                timeout=self.key_read_timeout,
            )
        except asyncio.TimeoutError:
            raise TransportFailure(
                f"Reading private key {key_path} timed out after {self.key_read_timeout}s",
                stage=_STAGE,
            ) from None
        except FileNotFoundError:
            raise KeyUnavailable(f"Private key {key_path} does not exist", stage=_STAGE) from None
        except PermissionError:
            raise KeyUnavailable(f"Private key {key_path} is not readable", stage=_STAGE) from None
        except UnicodeDecodeError:
            raise KeyUnavailable(f"Private key {key_path} is not a PEM file", stage=_STAGE) from None
        except OSError as e:
            raise KeyUnavailable(
                f"Could not read private key {key_path}: {e.strerror}", stage=_STAGE
            ) from None

    async def sign(self, identity: AppIdentity, ttl: int) -> SignedAssertion:
        if not 0 < ttl <= JWT_MAX_TTL_SECONDS:
            raise ConfigurationError(
                f"Assertion TTL must be between 1 and {JWT_MAX_TTL_SECONDS} seconds, got {ttl}",
                stage=_STAGE,
            )

        pem = await self._read_key(identity.key_path)
        try:
            key = jwk.construct(pem, JWT_ALGORITHM)
        except (JOSEError, ValueError, TypeError):
            # Decoder messages can quote key bytes.
            raise KeyUnavailable(
                f"Private key {identity.key_path} could not be decoded as an RSA key",
                stage=_STAGE,
            ) from None
        if key.is_public():
            raise KeyUnavailable(
                f"{identity.key_path} holds a public key; the App private key is required",
                stage=_STAGE,
            )

        # Back-date iat for clock drift, but keep at least half the TTL ahead of now.
        skew = min(self.clock_skew, ttl // 2)
        issued_at = int(self.clock.now().timestamp()) - skew
        expires_at = issued_at + ttl
        nonce = secrets.token_hex(16)
        claims = {
            "iat": issued_at,
            "exp": expires_at,
            "iss": identity.issuer,
            "jti": nonce,
        }
        if identity.audience:
            claims["aud"] = identity.audience

        try:
            token = jwt.encode(claims, key, algorithm=JWT_ALGORITHM)
        except JOSEError as e:
            raise SigningFailure(f"{JWT_ALGORITHM} signing failed: {type(e).__name__}", stage=_STAGE) from None

        logger.info(f"Signed App assertion for issuer {identity.issuer} (ttl {ttl}s)")
        return SignedAssertion(
            token=SecretStr(token),
            issuer=identity.issuer,
            audience=identity.audience,
            issued_at=datetime.fromtimestamp(issued_at, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
            nonce=nonce,
        )
