"""Service layer for session metering."""

from meter_service.services.authorization_gate import AuthorizationGate, GateDecision
from meter_service.services.expiration_sweeper import ExpirationSweeper, SweepResult
from meter_service.services.revenue_reconciler import RevenueReconciler, build_billing_record
from meter_service.services.session_service import SessionService
from meter_service.services.tenant_admin_service import TenantAdminService

__all__ = [
    "AuthorizationGate",
    "ExpirationSweeper",
    "GateDecision",
    "RevenueReconciler",
    "SessionService",
    "SweepResult",
    "TenantAdminService",
    "build_billing_record",
]
