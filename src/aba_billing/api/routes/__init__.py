"""API route modules."""

from aba_billing.api.routes.email_queue import router as email_queue_router
from aba_billing.api.routes.health import router as health_router
from aba_billing.api.routes.imports import router as imports_router
from aba_billing.api.routes.payroll_runs import router as payroll_runs_router

__all__ = ["email_queue_router", "health_router", "imports_router", "payroll_runs_router"]
