"""
Loan lifecycle event publishing.
"""

import json
from typing import Optional

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from cryptolend.config import KafkaSettings
from cryptolend.logging import get_logger
from cryptolend.shared import utcnow
from .models import Loan, LoanEvent, LoanStatus, PaymentResult

logger = get_logger(__name__)

LOAN_CREATED = "LOAN_CREATED"
LOAN_PAYMENT = "LOAN_PAYMENT"
LOAN_COMPLETED = "LOAN_COMPLETED"
LOAN_STATUS_CHANGED = "LOAN_STATUS_CHANGED"


class LoanEventPublisher:
    """Publishes loan events to Kafka when enabled.

    Events describe state that is already committed, so a failed send is
    logged and never undoes or fails the ledger operation.
    """

    def __init__(self, config: KafkaSettings):
        self.config = config
        self.producer: Optional[AIOKafkaProducer] = None

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    async def start(self):
        if not self.enabled:
            logger.info("Kafka publishing disabled")
            return

        self.producer = AIOKafkaProducer(
            bootstrap_servers=self.config.bootstrap_servers,
            request_timeout_ms=self.config.producer_timeout_ms,
            value_serializer=lambda v: json.dumps(v, default=str).encode('utf-8')
        )
        await self.producer.start()
        logger.info(f"Kafka producer started, publishing to {self.config.topic_loan_events}")

    async def stop(self):
        if self.producer:
            await self.producer.stop()
            self.producer = None

    async def publish(self, event: LoanEvent) -> bool:
        """Send one event. Returns False when disabled or the send failed."""
        if self.producer is None:
            return False

        try:
            await self.producer.send_and_wait(
                self.config.topic_loan_events,
                value=event.model_dump(mode="json"),
                key=event.loan_id.encode('utf-8'),
            )
            return True
        except KafkaError as e:
            logger.error(f"Failed to publish {event.event} for loan {event.loan_id}: {e}")
            return False

    async def loan_created(self, loan: Loan) -> bool:
        return await self.publish(LoanEvent(
            event=LOAN_CREATED,
            loan_id=loan.id,
            user_id=loan.user_id,
            status=loan.status,
            timestamp=loan.created_at,
            amount=loan.principal,
            details={
                'collateral_amount': loan.collateral_amount,
                'ltv_ratio': loan.ltv_ratio,
                'total_repayment': loan.total_repayment,
            },
        ))

    async def payment_applied(self, loan_id: str, user_id: str, result: PaymentResult) -> bool:
        published = await self.publish(LoanEvent(
            event=LOAN_PAYMENT,
            loan_id=loan_id,
            user_id=user_id,
            status=result.loan_status,
            timestamp=result.transaction.created_at,
            amount=result.transaction.amount,
            remaining_balance=result.remaining_balance,
        ))
        if result.loan_status == LoanStatus.COMPLETED:
            published = await self.publish(LoanEvent(
                event=LOAN_COMPLETED,
                loan_id=loan_id,
                user_id=user_id,
                status=LoanStatus.COMPLETED,
                previous_status=LoanStatus.ACTIVE,
                timestamp=utcnow(),
            )) and published
        return published

    async def status_changed(self, loan: Loan, previous_status: LoanStatus) -> bool:
        return await self.publish(LoanEvent(
            event=LOAN_STATUS_CHANGED,
            loan_id=loan.id,
            user_id=loan.user_id,
            status=loan.status,
            previous_status=previous_status,
            timestamp=loan.updated_at,
        ))
