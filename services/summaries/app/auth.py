from __future__ import annotations

from typing import Dict, Iterable, Optional

from fastapi import Request


class AuthError(Exception):
    def __init__(self, detail: str = "Unauthorized", status_code: int = 401) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class TokenVerifier:
    async def verify(self, token: str) -> str:  # pragma: no cover - interface
        raise NotImplementedError


class StaticTokenVerifier(TokenVerifier):
    """Maps bearer tokens to user ids; expired tokens are rejected distinctly."""

    def __init__(self, tokens: Optional[Dict[str, str]] = None, expired: Iterable[str] = ()) -> None:
        self._tokens: Dict[str, str] = dict(tokens or {})
        self._expired = set(expired)

    def issue(self, token: str, user_id: str) -> None:
        self._tokens[token] = user_id
        self._expired.discard(token)

    def expire(self, token: str) -> None:
        self._expired.add(token)

    async def verify(self, token: str) -> str:
        if token in self._expired:
            raise AuthError("Token expired")
        user_id = self._tokens.get(token)
        if not user_id:
            raise AuthError()
        return user_id


def bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError()
    return token.strip()
