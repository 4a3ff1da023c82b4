"""Business-ownership claims against directory listings."""

from claims.admin import ClaimAdminGateway, grant_place_ownership
from claims.models import ClaimStatus, ClaimSubmission, PlaceClaim, VerificationMethod
from claims.repository import ClaimStore
from claims.verifier import ClaimVerifier

__all__ = [
    "ClaimAdminGateway",
    "ClaimStatus",
    "ClaimStore",
    "ClaimSubmission",
    "ClaimVerifier",
    "PlaceClaim",
    "VerificationMethod",
    "grant_place_ownership",
]
