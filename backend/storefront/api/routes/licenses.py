"""
License routes, called by the creator's desktop apps.

Failures come back as typed error codes (see api/errors.py):
403101 revoked, 403102 activation limit, 403103 device not activated,
404001 unknown key.
"""
from fastapi import APIRouter

from storefront.api.deps import ClientIPDep, SessionDep, enforce_rate_limit
from storefront.api.schemas import (
    ApiEnvelope,
    LicenseDeactivateData,
    LicenseGrantData,
    LicenseRequest,
)
from storefront.core.config import settings
from storefront.services import license_service
from storefront.services.license_service import LicenseGrant

router = APIRouter(prefix="/licenses", tags=["licenses"])


def _limit(ip: str, body: LicenseRequest) -> None:
    enforce_rate_limit(
        "license",
        ip,
        license_service.normalize_license_key(body.license_key),
        limit=settings.RATE_LIMIT_LICENSE_PER_WINDOW,
    )


def _to_grant_data(grant: LicenseGrant) -> LicenseGrantData:
    return LicenseGrantData(
        license_key=grant.license_key,
        device_id_hash=grant.device_id_hash,
        version_id=grant.version_id,
        activations_used=grant.activations_used,
        activation_limit=grant.activation_limit,
        expires_at=grant.expires_at,
        grant_token=grant.grant_token,
    )


@router.post("/activate", response_model=ApiEnvelope)
def activate(session: SessionDep, ip: ClientIPDep, body: LicenseRequest) -> ApiEnvelope:
    """POST /api/v1/licenses/activate"""
    _limit(ip, body)
    grant = license_service.activate(session, body.license_key, body.device_id_hash)
    return ApiEnvelope(data=_to_grant_data(grant))


@router.post("/validate", response_model=ApiEnvelope)
def validate(session: SessionDep, ip: ClientIPDep, body: LicenseRequest) -> ApiEnvelope:
    """POST /api/v1/licenses/validate"""
    _limit(ip, body)
    grant = license_service.validate(session, body.license_key, body.device_id_hash)
    return ApiEnvelope(data=_to_grant_data(grant))


@router.post("/deactivate", response_model=ApiEnvelope)
def deactivate(session: SessionDep, ip: ClientIPDep, body: LicenseRequest) -> ApiEnvelope:
    """POST /api/v1/licenses/deactivate"""
    _limit(ip, body)
    remaining = license_service.deactivate(session, body.license_key, body.device_id_hash)
    return ApiEnvelope(
        data=LicenseDeactivateData(
            license_key=license_service.normalize_license_key(body.license_key),
            active_activations=remaining,
        )
    )
