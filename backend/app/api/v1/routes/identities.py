"""Identity routes - disposable aliases, protection and deletion."""

# ENDPOINTS:
# GET    /identities                         - List identities (default first)
# POST   /identities                         - Create identity
# GET    /identities/search                  - Search by alias or display name
# GET    /identities/check-alias/{alias}     - Alias availability
# GET    /identities/export                  - Export as json or csv
# GET    /identities/protection              - Protection slots and recommendations
# PUT    /identities/protection/bulk         - Protect/unprotect up to 10 identities
# PUT    /identities/privacy/bulk            - Privacy settings for up to 10 identities
# POST   /identities/bulk-delete             - Delete up to 10 identities
# GET    /identities/deleted                 - Soft-deleted identities
# POST   /identities/import                  - Import up to 10 identities
# GET    /identities/{id}                    - Get identity
# PATCH  /identities/{id}                    - Update display name, avatar, expiry
# PUT    /identities/{id}/default            - Make default
# PUT    /identities/{id}/protection         - Protect or unprotect
# PUT    /identities/{id}/archive            - Archive or unarchive
# POST   /identities/{id}/clone              - Clone into a new alias
# GET    /identities/{id}/auto-delete        - Auto-delete settings
# PUT    /identities/{id}/auto-delete        - Update auto-delete settings
# GET    /identities/{id}/forwarding         - Forwarding preferences
# PUT    /identities/{id}/forwarding         - Update forwarding preferences
# GET    /identities/{id}/deletion-options   - Preview deletion modes
# GET    /identities/{id}/stats              - Usage counted from messages and memberships
# DELETE /identities/{id}                    - Soft or permanent delete
# POST   /identities/{id}/restore            - Restore soft-deleted identity

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import (
    get_current_user,
    get_identity_store,
    limit_alias_check,
    limit_bulk,
    limit_import,
    limit_search,
)
from app.models.identity import IdentityRead
from app.models.user import User
from app.schemas.identities import (
    ArchiveRequest,
    AutoDeleteSettings,
    BulkDeleteRequest,
    BulkPrivacyRequest,
    BulkProtectionRequest,
    BulkResponse,
    CloneIdentityRequest,
    CreateIdentityRequest,
    DeletionResponse,
    ForwardingPreferences,
    IdentityListResponse,
    IdentityResponse,
    ImportIdentitiesRequest,
    ProtectionRequest,
    UpdateIdentityRequest,
)
from app.services.identity_store import BulkResult, IdentityStore

router = APIRouter(prefix="/identities", tags=["identities"])


# ============================================================================
# HELPERS
# ============================================================================


def _read(identity) -> IdentityRead:
    return IdentityRead.model_validate(identity)


def _bulk(result: BulkResult) -> BulkResponse:
    return BulkResponse(
        success=not result.errors,
        processed=result.processed,
        errors=result.errors,
        summary=result.summary,
    )


# ============================================================================
# COLLECTION ENDPOINTS
# ============================================================================


@router.get("", response_model=IdentityListResponse)
def list_identities(
    include_expired: bool = Query(False),
    include_inactive: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityListResponse:
    identities, total = store.list_identities(
        current_user.id,
        include_expired=include_expired,
        include_inactive=include_inactive,
        limit=limit,
        skip=skip,
    )
    return IdentityListResponse(
        identities=[_read(i) for i in identities], total=total, limit=limit, skip=skip
    )


@router.post("", response_model=IdentityResponse, status_code=status.HTTP_201_CREATED)
def create_identity(
    create_request: CreateIdentityRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    identity, warnings = store.create_identity(
        current_user.id,
        create_request.alias,
        display_name=create_request.display_name,
        avatar=create_request.avatar,
        is_default=create_request.is_default,
        expires_at=create_request.expires_at,
        auto_delete_settings=create_request.auto_delete,
        privacy=create_request.privacy,
        forwarding=create_request.forwarding,
    )
    return IdentityResponse(identity=_read(identity), warnings=warnings)


@router.get(
    "/search", response_model=IdentityListResponse, dependencies=[Depends(limit_search)]
)
def search_identities(
    q: str = Query(..., min_length=1, max_length=50),
    include_inactive: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityListResponse:
    identities, total = store.search_identities(
        current_user.id, q, include_inactive=include_inactive, limit=limit, skip=skip
    )
    return IdentityListResponse(
        identities=[_read(i) for i in identities], total=total, limit=limit, skip=skip
    )


@router.get("/check-alias/{alias}", dependencies=[Depends(limit_alias_check)])
def check_alias(
    alias: str,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    return store.check_alias_availability(current_user.id, alias)


@router.get("/export")
def export_identities(
    fmt: Literal["json", "csv"] = Query("json", alias="format"),
    include_stats: bool = Query(True),
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
):
    exported = store.export_identities(current_user.id, fmt=fmt, include_stats=include_stats)
    if fmt == "csv":
        return Response(
            content=exported,
            media_type="text/csv",
            headers={"Content-Disposition": 'attachment; filename="identities.csv"'},
        )
    return exported


@router.get("/protection")
def get_protection_status(
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    status_info = store.get_protection_status(current_user.id)
    default = status_info["default_identity"]
    return {
        **status_info,
        "default_identity": _read(default) if default else None,
        "protected_identities": [_read(i) for i in status_info["protected_identities"]],
        "unprotected_identities": [_read(i) for i in status_info["unprotected_identities"]],
    }


@router.put(
    "/protection/bulk", response_model=BulkResponse, dependencies=[Depends(limit_bulk)]
)
def bulk_update_protection(
    bulk_request: BulkProtectionRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> BulkResponse:
    result = store.bulk_update_protection(
        current_user.id, [(u.identity_id, u.protect) for u in bulk_request.updates]
    )
    return _bulk(result)


@router.put(
    "/privacy/bulk", response_model=BulkResponse, dependencies=[Depends(limit_bulk)]
)
def bulk_update_privacy(
    bulk_request: BulkPrivacyRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> BulkResponse:
    return _bulk(
        store.bulk_update_privacy(
            current_user.id, bulk_request.identity_ids, bulk_request.privacy
        )
    )


@router.post(
    "/bulk-delete", response_model=BulkResponse, dependencies=[Depends(limit_bulk)]
)
def bulk_delete(
    bulk_request: BulkDeleteRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> BulkResponse:
    result = store.bulk_delete(
        current_user.id,
        bulk_request.identity_ids,
        permanent=bulk_request.deletion_type == "permanent",
        force=bulk_request.force,
    )
    return _bulk(result)


@router.get("/deleted", response_model=IdentityListResponse)
def list_deleted(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityListResponse:
    identities, total = store.list_deleted(current_user.id, limit=limit, skip=skip)
    return IdentityListResponse(
        identities=[_read(i) for i in identities], total=total, limit=limit, skip=skip
    )


@router.post("/import", dependencies=[Depends(limit_import)])
def import_identities(
    import_request: ImportIdentitiesRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    result = store.import_identities(
        current_user.id,
        import_request.identities,
        overwrite_existing=import_request.overwrite_existing,
    )
    return {"success": not result["errors"], **result}


# ============================================================================
# SINGLE IDENTITY ENDPOINTS
# ============================================================================


@router.get("/{identity_id}", response_model=IdentityResponse)
def get_identity(
    identity_id: int,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    return IdentityResponse(identity=_read(store.get_identity(current_user.id, identity_id)))


@router.patch("/{identity_id}", response_model=IdentityResponse)
def update_identity(
    identity_id: int,
    update_request: UpdateIdentityRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    identity, warnings = store.update_identity(
        current_user.id, identity_id, update_request.model_dump(exclude_unset=True)
    )
    return IdentityResponse(identity=_read(identity), warnings=warnings)


@router.put("/{identity_id}/default", response_model=IdentityResponse)
def set_default(
    identity_id: int,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    return IdentityResponse(identity=_read(store.set_default(current_user.id, identity_id)))


@router.put("/{identity_id}/protection", response_model=IdentityResponse)
def set_protection(
    identity_id: int,
    protection_request: ProtectionRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    identity = store.set_protection(current_user.id, identity_id, protection_request.protect)
    return IdentityResponse(identity=_read(identity))


@router.put("/{identity_id}/archive", response_model=IdentityResponse)
def archive_identity(
    identity_id: int,
    archive_request: ArchiveRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    identity = store.archive_identity(current_user.id, identity_id, archive_request.archive)
    return IdentityResponse(identity=_read(identity))


@router.post(
    "/{identity_id}/clone",
    response_model=IdentityResponse,
    status_code=status.HTTP_201_CREATED,
)
def clone_identity(
    identity_id: int,
    clone_request: CloneIdentityRequest,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    identity, warnings = store.clone_identity(
        current_user.id,
        identity_id,
        clone_request.alias,
        display_name=clone_request.display_name,
        copy_settings=clone_request.copy_settings,
    )
    return IdentityResponse(identity=_read(identity), warnings=warnings)


@router.get("/{identity_id}/auto-delete")
def get_auto_delete(
    identity_id: int,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    return store.get_auto_delete(current_user.id, identity_id)


@router.put("/{identity_id}/auto-delete")
def update_auto_delete(
    identity_id: int,
    auto_delete_settings: AutoDeleteSettings,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    identity, warnings = store.update_auto_delete(
        current_user.id, identity_id, auto_delete_settings
    )
    return {
        "success": True,
        "settings": store.get_auto_delete(current_user.id, identity.id),
        "warnings": warnings,
    }


@router.get("/{identity_id}/forwarding")
def get_forwarding(
    identity_id: int,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    return store.get_forwarding_preferences(current_user.id, identity_id)


@router.put("/{identity_id}/forwarding")
def update_forwarding(
    identity_id: int,
    preferences: ForwardingPreferences,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    identity = store.update_forwarding_preferences(current_user.id, identity_id, preferences)
    return {
        "success": True,
        "preferences": store.get_forwarding_preferences(current_user.id, identity.id),
    }


@router.get("/{identity_id}/deletion-options")
def get_deletion_options(
    identity_id: int,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    options = store.get_deletion_options(current_user.id, identity_id)
    return {**options, "identity": _read(options["identity"])}


@router.get("/{identity_id}/stats")
def get_identity_stats(
    identity_id: int,
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> dict:
    stats = store.get_identity_stats(current_user.id, identity_id, start=start, end=end)
    return {"success": True, "stats": {**stats, "identity": _read(stats["identity"])}}


@router.delete("/{identity_id}", response_model=DeletionResponse)
def delete_identity(
    identity_id: int,
    deletion_type: Literal["soft", "permanent"] = Query("soft"),
    force: bool = Query(False),
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> DeletionResponse:
    result = store.request_deletion(
        current_user.id,
        identity_id,
        permanent=deletion_type == "permanent",
        force=force,
    )
    return DeletionResponse(
        deletion_type=result.deletion_type,
        restorable=result.restorable,
        protection_level=result.protection_level,
        replacement_default=(
            result.replacement_default.alias if result.replacement_default else None
        ),
        identity_id=result.identity_id,
        alias=result.alias,
        warnings=result.warnings,
    )


@router.post("/{identity_id}/restore", response_model=IdentityResponse)
def restore_identity(
    identity_id: int,
    current_user: User = Depends(get_current_user),
    store: IdentityStore = Depends(get_identity_store),
) -> IdentityResponse:
    return IdentityResponse(identity=_read(store.restore_identity(current_user.id, identity_id)))
