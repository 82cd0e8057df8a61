"""
FastAPI dependencies for the billing API.

WHY: Every service is built per request on the request's session.
Collaborators that hold provider credentials (payment router,
notifications) are process-wide singletons exposed as dependencies so
tests can swap them with app.dependency_overrides.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.db.session import get_db
from billing_engine.services.billing_schedule_service import BillingScheduleService
from billing_engine.services.dunning_service import DunningService
from billing_engine.services.invoice_service import InvoiceService
from billing_engine.services.notification_service import (
    NotificationService,
    get_notification_service,
)
from billing_engine.services.payment_gateways import PaymentRouter, get_payment_router
from billing_engine.services.pdf_service import PDFService, get_pdf_service


def get_invoice_service(
    db: AsyncSession = Depends(get_db),
    pdf_service: PDFService = Depends(get_pdf_service),
    notifications: NotificationService = Depends(get_notification_service),
) -> InvoiceService:
    return InvoiceService(db, pdf_service=pdf_service, notification_service=notifications)


def get_billing_schedule_service(
    db: AsyncSession = Depends(get_db),
    router: PaymentRouter = Depends(get_payment_router),
    notifications: NotificationService = Depends(get_notification_service),
) -> BillingScheduleService:
    return BillingScheduleService(db, router=router, notification_service=notifications)


def get_dunning_service(
    db: AsyncSession = Depends(get_db),
    router: PaymentRouter = Depends(get_payment_router),
    notifications: NotificationService = Depends(get_notification_service),
) -> DunningService:
    return DunningService(db, router=router, notification_service=notifications)
