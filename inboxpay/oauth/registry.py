from __future__ import annotations

from inboxpay.errors import UnsupportedProviderError
from inboxpay.models import MailProvider
from inboxpay.oauth.base import OAuthProvider, OAuthProviderName
from inboxpay.oauth.google import GoogleOAuthProvider

# Which authorization server issues the tokens for each mailbox provider.
MAIL_PROVIDER_AUTH: dict[MailProvider, OAuthProviderName] = {
    MailProvider.gmail: OAuthProviderName.google,
}

_registry: dict[OAuthProviderName, OAuthProvider] = {}


def register_provider(provider: OAuthProvider) -> None:
    _registry[provider.name] = provider


def get_provider(name: OAuthProviderName | str) -> OAuthProvider:
    try:
        key = OAuthProviderName(name)
    except ValueError:
        raise UnsupportedProviderError(f"Unsupported provider: {name}") from None
    if key not in _registry and key is OAuthProviderName.google:
        register_provider(GoogleOAuthProvider())
    provider = _registry.get(key)
    if provider is None:
        raise UnsupportedProviderError(f"Unsupported provider: {name}")
    return provider


def provider_for_mail(mail_provider: MailProvider | str) -> OAuthProvider:
    try:
        key = MailProvider(mail_provider)
    except ValueError:
        raise UnsupportedProviderError(f"Unsupported mail provider: {mail_provider}") from None
    return get_provider(MAIL_PROVIDER_AUTH[key])


def reset_registry() -> None:
    _registry.clear()
