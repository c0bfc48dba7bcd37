"""
services/booking/dependencies.py
FastAPI providers for the engine components. Each request gets fresh
component instances bound to the shared session factory and notifier.
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import get_session_factory
from services.booking.repository import BookingRepository
from services.notification.dispatcher import NotificationDispatcher, get_notifier
from services.reschedule.workflow import RescheduleRequestWorkflow


def get_booking_repository(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> BookingRepository:
    return BookingRepository(session_factory, notifier)


def get_reschedule_workflow(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    notifier: NotificationDispatcher = Depends(get_notifier),
) -> RescheduleRequestWorkflow:
    return RescheduleRequestWorkflow(session_factory, notifier)
