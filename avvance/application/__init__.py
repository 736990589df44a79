"""Application layer module.

Contains application services (use cases) that orchestrate
domain logic and infrastructure.
"""

from avvance.application.cleanup import CleanupScheduler
from avvance.application.financing_service import FinancingService
from avvance.application.preapproval_service import PreApprovalService
from avvance.application.reconciler import StatusReconciler

__all__ = [
    "CleanupScheduler",
    "FinancingService",
    "PreApprovalService",
    "StatusReconciler",
]
