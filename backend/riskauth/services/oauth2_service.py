# backend/riskauth/services/oauth2_service.py
"""
OAuth2 account linking.

The provider handshake happens in the web layer's OAuth2 client; this module
receives the provider name, the raw user attributes and the access token,
and resolves them to a local account:

1. an existing (provider, provider_user_id) link wins and is refreshed
2. otherwise a user with the same email is linked
3. otherwise a new, email-verified user is created and linked

Adding a provider means adding an extractor to PROVIDER_EXTRACTORS.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from riskauth import crud
from riskauth.core.security import encrypt_value, generate_unusable_password
from riskauth.db.models.oauth2_link import OAuth2UserLink
from riskauth.db.models.user import User
from riskauth.exceptions import ValidationFailure
from riskauth.schemas.user import OAuth2UserInfo, UserCreate

logger = logging.getLogger(__name__)


def _str_or_none(value: Any) -> str | None:
    return str(value) if value not in (None, "") else None


def _google(attributes: dict[str, Any]) -> OAuth2UserInfo:
    return OAuth2UserInfo(
        provider="google",
        id=str(attributes["sub"]),
        name=_str_or_none(attributes.get("name")),
        email=_str_or_none(attributes.get("email")),
        image_url=_str_or_none(attributes.get("picture")),
    )


def _github(attributes: dict[str, Any]) -> OAuth2UserInfo:
    # GitHub ids are integers
    return OAuth2UserInfo(
        provider="github",
        id=str(attributes["id"]),
        name=_str_or_none(attributes.get("name")),
        email=_str_or_none(attributes.get("email")),
        image_url=_str_or_none(attributes.get("avatar_url")),
    )


def _microsoft(attributes: dict[str, Any]) -> OAuth2UserInfo:
    # Graph /me carries no picture URL
    return OAuth2UserInfo(
        provider="microsoft",
        id=str(attributes["id"]),
        name=_str_or_none(attributes.get("displayName")),
        email=_str_or_none(attributes.get("mail") or attributes.get("userPrincipalName")),
        image_url=None,
    )


PROVIDER_EXTRACTORS: dict[str, Callable[[dict[str, Any]], OAuth2UserInfo]] = {
    "google": _google,
    "github": _github,
    "microsoft": _microsoft,
}


def extract_user_info(provider: str, attributes: dict[str, Any]) -> OAuth2UserInfo:
    """
    Raises:
        ValidationFailure: unsupported provider or missing id attribute
    """
    extractor = PROVIDER_EXTRACTORS.get(provider.lower())
    if extractor is None:
        raise ValidationFailure(f"Unsupported OAuth2 provider: {provider}")
    try:
        return extractor(attributes)
    except KeyError as e:
        raise ValidationFailure(f"OAuth2 attributes from {provider} lack {e}") from e


async def _get_link(db: AsyncSession, provider: str, provider_user_id: str) -> OAuth2UserLink | None:
    result = await db.execute(
        select(OAuth2UserLink).where(
            OAuth2UserLink.provider == provider,
            OAuth2UserLink.provider_user_id == provider_user_id,
        )
    )
    return result.scalars().first()


async def generate_unique_username(db: AsyncSession, info: OAuth2UserInfo) -> str:
    base_username = f"{info.provider}_{info.id}"
    username = base_username
    counter = 1
    while await crud.user.exists_by_username(db, username=username):
        username = f"{base_username}_{counter}"
        counter += 1
    return username


async def _create_user(db: AsyncSession, info: OAuth2UserInfo) -> User:
    if not info.email:
        raise ValidationFailure(f"{info.provider} account has no email address to register with")
    username = await generate_unique_username(db, info)
    try:
        # Random password: OAuth2-created accounts do not sign in with a password
        obj_in = UserCreate(
            email=info.email,
            password=generate_unusable_password(),
            username=username,
            full_name=info.name,
            is_verified=True,
        )
    except ValidationError as e:
        raise ValidationFailure(f"{info.provider} account data cannot be registered: {e}") from e
    return await crud.user.create(db, obj_in=obj_in, commit=False)


def _refresh_link(link: OAuth2UserLink, info: OAuth2UserInfo, access_token: str | None) -> None:
    now = datetime.now(UTC)
    link.provider_email = info.email
    link.provider_name = info.name
    link.provider_picture_url = info.image_url
    link.access_token = encrypt_value(access_token) if access_token else None
    link.last_used_at = now
    link.is_active = True


async def resolve_oauth2_user(
    db: AsyncSession,
    provider: str,
    attributes: dict[str, Any],
    access_token: str | None = None,
) -> User:
    """Find or create the local account for a provider identity and write/refresh the link."""
    info = extract_user_info(provider, attributes)

    link = await _get_link(db, info.provider, info.id)
    if link is not None:
        user = await crud.user.get_by_id(db, user_id=link.user_id)
        if user is None:
            raise ValidationFailure(f"OAuth2 link {link.id} points to a missing user")
        _refresh_link(link, info, access_token)
        await db.commit()
        logger.info(f"OAuth2 login via existing link: user={user.username}, provider={info.provider}")
        return user

    user = await crud.user.get_by_email(db, email=info.email) if info.email else None
    if user is None:
        user = await _create_user(db, info)
        logger.info(f"Created user {user.username} from {info.provider} identity")

    link = OAuth2UserLink(
        user_id=user.id,
        provider=info.provider,
        provider_user_id=info.id,
        linked_at=datetime.now(UTC),
    )
    _refresh_link(link, info, access_token)
    db.add(link)
    await db.commit()
    await db.refresh(user)

    logger.info(f"New OAuth2 link created: user={user.username}, provider={info.provider}")
    return user
