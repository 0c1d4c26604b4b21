"""Relay (TURN) credential issuance with per-user quota and connection limits."""

from .credentials import CredentialIssuer, sign, utc_day
from .ice import build_ice_servers
from .schemas import Credential, CredentialGrant, IceServer, QuotaStatus

__all__ = [
    "CredentialIssuer",
    "Credential",
    "CredentialGrant",
    "IceServer",
    "QuotaStatus",
    "build_ice_servers",
    "sign",
    "utc_day",
]
