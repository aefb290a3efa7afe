"""Remote registry access: references, retrying transport, auth and the repository store."""

from .auth import (
    EMPTY_CREDENTIAL,
    AuthClient,
    Challenge,
    Credential,
    CredentialStore,
    StaticCredentialStore,
    TokenCache,
    parse_challenge,
)
from .reference import Reference
from .remote import Repository, credential_from_config, credential_store_for, retry_policy_from_config
from .retry import RetryPolicy, RetryTransport

__all__ = [
    "Reference",
    "Repository",
    "RetryPolicy",
    "RetryTransport",
    "retry_policy_from_config",
    "AuthClient",
    "Challenge",
    "Credential",
    "CredentialStore",
    "EMPTY_CREDENTIAL",
    "StaticCredentialStore",
    "TokenCache",
    "parse_challenge",
    "credential_from_config",
    "credential_store_for",
]
