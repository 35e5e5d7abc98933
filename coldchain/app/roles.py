"""
roles.py - Role-based access control.

Roles:
  gateway   - IoT edge gateway; submits telemetry and forces flushes
  operator  - logistics operator; reads batches, shipments and metrics
  inspector - auditor / consignee; every operator read, plus verification
              and attestation results

Role is passed in the X-Role header. Unknown or missing roles fall back to
inspector (read and verify only).
"""
from enum import Enum
from typing import Optional

from fastapi import Header, HTTPException


class Role(str, Enum):
    GATEWAY   = "gateway"
    OPERATOR  = "operator"
    INSPECTOR = "inspector"


ROLE_DESCRIPTIONS: dict[Role, str] = {
    Role.GATEWAY:   "Edge gateway: submits sensor telemetry, may force batch flushes",
    Role.OPERATOR:  "Logistics operator: reads live batches, committed shipments and metrics",
    Role.INSPECTOR: "Auditor or consignee: operator reads plus integrity verification and attestations",
}

PERMISSIONS: dict[Role, set[str]] = {
    Role.GATEWAY:   {"submit_telemetry", "flush_batches", "read_batches", "read_health"},
    Role.OPERATOR:  {"read_batches", "read_shipments", "read_metrics", "export_metrics",
                     "read_health"},
    Role.INSPECTOR: {"read_batches", "read_shipments", "read_metrics",
                     "read_attestations", "verify_shipment", "read_health"},
}

_DEFAULT_ROLE = Role.INSPECTOR


def resolve_role(x_role: Optional[str]) -> Role:
    try:
        return Role(x_role.lower()) if x_role else _DEFAULT_ROLE
    except ValueError:
        return _DEFAULT_ROLE


def require(operation: str):
    def _dep(x_role: Optional[str] = Header(default=None, alias="X-Role")) -> Role:
        role = resolve_role(x_role)
        if operation not in PERMISSIONS.get(role, set()):
            raise HTTPException(403, detail={
                "error": "access_denied", "operation": operation, "role": role.value,
                "allowed_roles": [r.value for r, p in PERMISSIONS.items() if operation in p],
            })
        return role
    return _dep
