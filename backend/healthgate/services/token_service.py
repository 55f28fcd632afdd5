"""
HealthGate Backend — Credential & Token Codec
===============================================

What:  Issues and verifies signed access/refresh tokens and turns a verified
       access token into a request-scoped Principal.
Why:   The pipeline must never trust a claim before the signature is checked,
       and must never build a Principal from an expired or malformed token.
How:   PyJWT, HS256, separate secrets per token type. Two layers:
       - TokenCodec: pure and synchronous (no I/O), injectable clock
       - TokenService: async, adds refresh-token rotation and revocation on
         top of the CounterStore, plus subject resolution via a UserDirectory
Who:   Used by the authentication stage and the /api/v1/auth routes.

Token Format (three base64url segments, HS256):
    {
        "sub":  "<subject id>",
        "role": "patient" | "doctor" | "admin",
        "iat":  1700000000,
        "exp":  1700000900,
        "type": "access" | "refresh",
        "jti":  "<random id>",
        "ver":  true,            # account verified at issue time
        "iss":  "aiforhealth-api",
        "aud":  "aiforhealth-client"
    }

Verification order:
    1. Signature (with the secret for the expected token type)
    2. Structure: required claims, issuer, audience, known role, token type
    3. Expiry against the codec clock

    Step 3 runs after step 1 so that an expired token with a forged
    signature is reported as a signature failure, not as expired.

Refresh rotation:
    Every issued refresh token's `jti` is stored in the CounterStore with the
    refresh TTL. Using a refresh token deletes its `jti` and issues a new
    pair, so each refresh token works exactly once. Logout deletes it too.
"""

import dataclasses
import enum
import logging
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

import jwt

from healthgate.config import Settings, settings as default_settings
from healthgate.exceptions import (
    AuthenticationError,
    InvalidRefreshTokenError,
    SignatureInvalidError,
    SubjectNotFoundError,
    TokenExpiredError,
    TokenMalformedError,
)

if TYPE_CHECKING:
    from healthgate.services.counter_store import CounterStore
    from healthgate.services.user_directory import UserDirectory

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ["sub", "role", "iat", "exp", "type"]


class Role(str, enum.Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """
    The authenticated caller for one request.

    Only TokenCodec.verify() constructs these, and only after the signature,
    structure and expiry checks have all passed.
    """

    subject_id: str
    role: Role
    verified: bool
    issued_at: int
    expires_at: int
    token_id: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


class TokenCodec:
    """
    Stateless encoder/decoder for HS256 tokens.

    Args:
        config: Settings providing secrets, issuer, audience and TTLs
        clock:  Returns the current epoch time in seconds (injectable for tests)
    """

    def __init__(self, config: Optional[Settings] = None, clock: Optional[Callable[[], int]] = None):
        self._config = config or default_settings
        self._clock = clock or (lambda: int(time.time()))

    def _secret_for(self, token_type: str) -> str:
        if token_type == REFRESH:
            return self._config.jwt_refresh_secret
        return self._config.jwt_secret

    def _default_ttl(self, token_type: str) -> int:
        if token_type == REFRESH:
            return self._config.refresh_token_ttl
        return self._config.access_token_ttl

    # ── Issuing ───────────────────────────────────────────────────────────

    def issue(
        self,
        subject: str,
        role: Role,
        ttl: Optional[int] = None,
        token_type: str = ACCESS,
        verified: bool = False,
    ) -> str:
        """
        Sign a token for `subject`.

        Args:
            ttl: Lifetime in seconds (defaults to the configured TTL for the type)
        """
        if token_type not in (ACCESS, REFRESH):
            raise ValueError(f"Unknown token type '{token_type}'")
        now = self._clock()
        lifetime = self._default_ttl(token_type) if ttl is None else ttl
        claims: Dict[str, Any] = {
            "sub": subject,
            "role": Role(role).value,
            "iat": now,
            "exp": now + lifetime,
            "type": token_type,
            "jti": uuid.uuid4().hex,
            "ver": bool(verified),
            "iss": self._config.jwt_issuer,
            "aud": self._config.jwt_audience,
        }
        return jwt.encode(claims, self._secret_for(token_type), algorithm=self._config.jwt_algorithm)

    def issue_pair(self, subject: str, role: Role, verified: bool = False) -> TokenPair:
        return TokenPair(
            access_token=self.issue(subject, role, token_type=ACCESS, verified=verified),
            refresh_token=self.issue(subject, role, token_type=REFRESH, verified=verified),
            expires_in=self._config.access_token_ttl,
        )

    # ── Verification ──────────────────────────────────────────────────────

    def verify(self, token: str, expected_type: str = ACCESS) -> Principal:
        """
        Verify a token and build the Principal it describes.

        Raises:
            SignatureInvalidError: Signature does not match the secret for `expected_type`
            TokenMalformedError:   Undecodable, missing/invalid claims, wrong type or role
            TokenExpiredError:     Valid signature but `exp` has passed
        """
        try:
            claims = jwt.decode(
                token,
                self._secret_for(expected_type),
                algorithms=[self._config.jwt_algorithm],
                audience=self._config.jwt_audience,
                issuer=self._config.jwt_issuer,
                # exp/iat are checked below against the codec clock
                options={"verify_exp": False, "verify_iat": False, "require": _REQUIRED_CLAIMS},
            )
        except jwt.InvalidSignatureError as e:
            raise SignatureInvalidError(context={"detail": str(e)}) from e
        except jwt.InvalidTokenError as e:
            raise TokenMalformedError(context={"detail": str(e)}) from e

        if claims.get("type") != expected_type:
            raise TokenMalformedError(
                context={"detail": f"expected {expected_type} token, got {claims.get('type')!r}"}
            )
        try:
            role = Role(claims["role"])
            issued_at = int(claims["iat"])
            expires_at = int(claims["exp"])
        except (TypeError, ValueError) as e:
            raise TokenMalformedError(context={"detail": str(e)}) from e

        if self._clock() >= expires_at:
            raise TokenExpiredError(context={"sub": claims["sub"], "exp": expires_at})

        return Principal(
            subject_id=str(claims["sub"]),
            role=role,
            verified=bool(claims.get("ver", False)),
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(claims.get("jti", "")),
        )

    def refresh(self, refresh_token: str) -> TokenPair:
        """
        Exchange a refresh token for a new pair (stateless; no single-use check).

        Raises:
            InvalidRefreshTokenError: The token is not a valid, unexpired refresh token
        """
        principal = self.verify_refresh(refresh_token)
        return self.issue_pair(principal.subject_id, principal.role, principal.verified)

    def verify_refresh(self, refresh_token: str) -> Principal:
        try:
            return self.verify(refresh_token, expected_type=REFRESH)
        except AuthenticationError as e:
            raise InvalidRefreshTokenError(context={"reason": e.reason}) from e


class TokenService:
    """
    Async token operations that need the CounterStore or a UserDirectory.

    Refresh-token ids live under `refresh:<jti>` with the refresh TTL.
    """

    def __init__(self, codec: TokenCodec, store: "CounterStore", config: Optional[Settings] = None):
        self.codec = codec
        self._store = store
        self._config = config or default_settings

    @staticmethod
    def _refresh_key(jti: str) -> str:
        return f"refresh:{jti}"

    async def issue_pair(self, subject: str, role: Role, verified: bool = False) -> TokenPair:
        pair = self.codec.issue_pair(subject, role, verified)
        jti = self.codec.verify(pair.refresh_token, expected_type=REFRESH).token_id
        await self._store.set_with_expiry(
            self._refresh_key(jti), subject, self._config.refresh_token_ttl * 1000
        )
        return pair

    async def refresh(self, refresh_token: str, directory: Optional["UserDirectory"] = None) -> TokenPair:
        """
        Rotate a refresh token: consume the old one and issue a new pair.

        When a directory is given, the new pair carries the subject's current
        role and verification status, and deactivated subjects are refused.

        Raises:
            InvalidRefreshTokenError: Invalid, expired, already used or revoked
        """
        principal = self.codec.verify_refresh(refresh_token)
        # Delete-then-check makes reuse detection atomic: only one caller sees True
        if not await self._store.delete(self._refresh_key(principal.token_id)):
            logger.warning(
                "Refresh token reuse or revoked token for subject %s (jti=%s)",
                principal.subject_id,
                principal.token_id,
            )
            raise InvalidRefreshTokenError(context={"reason": "reused_or_revoked"})

        role, verified = principal.role, principal.verified
        if directory is not None:
            user = await directory.get(principal.subject_id)
            if user is None or not user.active:
                raise InvalidRefreshTokenError(context={"reason": "subject_not_found"})
            role, verified = user.role, user.verified

        return await self.issue_pair(principal.subject_id, role, verified)

    async def revoke(self, refresh_token: str) -> bool:
        """Invalidate a refresh token (logout). Returns False if it was not active."""
        try:
            principal = self.codec.verify_refresh(refresh_token)
        except InvalidRefreshTokenError:
            return False
        return await self._store.delete(self._refresh_key(principal.token_id))

    async def resolve(self, token: str, directory: "UserDirectory") -> Principal:
        """
        Verify an access token and confirm its subject still exists.

        Raises:
            TokenExpiredError | TokenMalformedError | SignatureInvalidError
            SubjectNotFoundError: Subject unknown or deactivated
        """
        principal = self.codec.verify(token, expected_type=ACCESS)
        user = await directory.get(principal.subject_id)
        if user is None or not user.active:
            raise SubjectNotFoundError(context={"sub": principal.subject_id})
        return dataclasses.replace(principal, verified=user.verified)
