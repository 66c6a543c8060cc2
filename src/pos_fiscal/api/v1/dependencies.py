"""Shared API dependencies for database access and FBR services."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from pos_fiscal.db.session import get_db
from pos_fiscal.services.authority import AuthorityClient, get_authority_client
from pos_fiscal.services.reference_data import ReferenceDataCache, get_reference_cache
from pos_fiscal.services.submission import SubmissionService
from pos_fiscal.services.vault import CredentialVault, get_credential_vault

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_reference_cache_dep() -> ReferenceDataCache:
    """Return the shared reference data cache."""
    return get_reference_cache()


def get_vault_dep() -> CredentialVault:
    """Return the shared credential vault."""
    return get_credential_vault()


def get_authority_client_dep() -> AuthorityClient:
    """Return the shared FBR client."""
    return get_authority_client()


ReferenceCacheDep = Annotated[ReferenceDataCache, Depends(get_reference_cache_dep)]
VaultDep = Annotated[CredentialVault, Depends(get_vault_dep)]
AuthorityClientDep = Annotated[AuthorityClient, Depends(get_authority_client_dep)]


def get_submission_service(
    db: SessionDep,
    reference_cache: ReferenceCacheDep,
    vault: VaultDep,
    client: AuthorityClientDep,
) -> SubmissionService:
    """Build a submission service bound to the request's session.

    Args:
        db: Database session
        reference_cache: Shared reference data cache
        vault: Credential vault
        client: FBR client used for remote validation

    Returns:
        SubmissionService for this request
    """
    return SubmissionService(db, reference_cache=reference_cache, vault=vault, client=client)


# Type alias for submission service dependency
SubmissionServiceDep = Annotated[SubmissionService, Depends(get_submission_service)]
