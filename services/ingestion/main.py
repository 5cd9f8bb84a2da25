"""Email ingestion service - polls Gmail for supplier invoices and Amex purchase alerts."""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from shared import settings, SessionLocal, Supplier, InvoiceEmail, Transaction, SyncState, build_transaction
from services.extractor.worker import enqueue_invoice_email
from services.ingestion.amex import parse_amex_alert
from services.ingestion.gmail_helpers import get_gmail_service, search_messages, fetch_message

logger = logging.getLogger(__name__)

SUPPLIER_SYNC_SOURCE = 'gmail'
AMEX_SYNC_SOURCE = 'gmail-amex'
SUPPLIER_MAX_RESULTS = 100
AMEX_MAX_RESULTS = 50


class EmailChecker:
    """Gmail checker for one database session and one Gmail service."""

    def __init__(self, db: Session, service: Any, enqueue: Optional[Callable[[int], None]] = None):
        self.db = db
        self.service = service
        self.enqueue = enqueue or enqueue_invoice_email

    def _after_timestamp(self, sync_source: str, since_days: Optional[int]) -> int:
        """Epoch seconds for the Gmail ``after:`` filter.

        An explicit ``since_days`` always wins; otherwise the last successful sync,
        otherwise the default lookback window.
        """
        if since_days:
            start = datetime.utcnow() - timedelta(days=int(since_days))
            logger.info(f"Manual timeframe: looking back {since_days} days from {start.isoformat()}")
        else:
            state = self.db.query(SyncState).filter(SyncState.source == sync_source).first()
            if state and state.last_successful_sync:
                start = state.last_successful_sync
            else:
                start = datetime.utcnow() - timedelta(days=settings.email_lookback_days)
            logger.info(f"Automatic sync for {sync_source}: checking mail after {start.isoformat()}")
        return int((start - datetime(1970, 1, 1)).total_seconds())

    def _mark_synced(self, sync_source: str, results: Dict[str, int]):
        state = self.db.query(SyncState).filter(SyncState.source == sync_source).first()
        if state is None:
            state = SyncState(source=sync_source)
            self.db.add(state)
        state.last_successful_sync = datetime.utcnow()
        state.last_sync_status = 'success'
        state.last_sync_results = results
        self.db.commit()

    def check_supplier_emails(self, since_days: Optional[int] = None) -> Dict[str, Any]:
        """Store new invoice emails from configured suppliers and queue them for extraction."""
        suppliers = self.db.query(Supplier).filter(
            Supplier.invoice_email.isnot(None),
            Supplier.invoice_email != '',
            Supplier.invoice_subject_pattern.isnot(None),
            Supplier.invoice_subject_pattern != '',
        ).all()

        result = {'total_found': 0, 'processed': 0, 'skipped': 0, 'errors': 0, 'emails': []}
        if not suppliers:
            logger.info("No suppliers configured for invoice email checking")
            return result

        after = self._after_timestamp(SUPPLIER_SYNC_SOURCE, since_days)

        for supplier in suppliers:
            query = f"from:{supplier.invoice_email} subject:{supplier.invoice_subject_pattern} after:{after}"
            logger.info(f"Checking invoices for {supplier.name}: {query}")
            message_ids = search_messages(self.service, query, max_results=SUPPLIER_MAX_RESULTS)
            result['total_found'] += len(message_ids)

            for message_id in message_ids:
                if self.db.query(InvoiceEmail).filter(InvoiceEmail.email_id == message_id).first():
                    logger.info(f"Email {message_id} already stored, skipping")
                    result['skipped'] += 1
                    continue
                try:
                    message = fetch_message(self.service, message_id)
                    invoice_email = InvoiceEmail(
                        email_id=message['emailId'],
                        date=message['date'],
                        subject=message['subject'],
                        sender=message['sender'],
                        body=message['body'],
                        status='pending',
                        supplier_id=supplier.supplier_id,
                    )
                    self.db.add(invoice_email)
                    self.db.commit()
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"Error storing email {message_id}: {e}")
                    result['errors'] += 1
                    continue

                result['processed'] += 1
                result['emails'].append(invoice_email.invoice_email_id)
                try:
                    self.enqueue(invoice_email.invoice_email_id)
                except Exception as e:
                    # stays pending, can be processed through the API
                    logger.warning(f"Could not queue invoice email {invoice_email.invoice_email_id}: {e}")

        self._mark_synced(SUPPLIER_SYNC_SOURCE, {
            'created': result['processed'], 'updated': 0, 'skipped': result['skipped'],
        })
        logger.info(
            f"Supplier email check: found={result['total_found']}, stored={result['processed']}, "
            f"skipped={result['skipped']}, errors={result['errors']}"
        )
        return result

    def check_amex_emails(self, since_days: Optional[int] = None) -> Dict[str, Any]:
        """Create draft purchase transactions from Amex large purchase alerts."""
        after = self._after_timestamp(AMEX_SYNC_SOURCE, since_days)
        query = f'from:{settings.amex_sender} subject:"{settings.amex_subject}" after:{after}'
        logger.info(f"Checking Amex alerts: {query}")
        message_ids = search_messages(self.service, query, max_results=AMEX_MAX_RESULTS)

        result = {'total_found': len(message_ids), 'processed': 0, 'skipped': 0, 'errors': 0, 'transactions': []}

        for message_id in message_ids:
            if self.db.query(Transaction).filter(Transaction.email_id == message_id).first():
                logger.info(f"Amex email {message_id} already recorded, skipping")
                result['skipped'] += 1
                continue
            try:
                message = fetch_message(self.service, message_id)
                if settings.amex_sender.lower() not in (message['sender'] or '').lower() \
                        or settings.amex_subject not in (message['subject'] or ''):
                    result['skipped'] += 1
                    continue
                alert = parse_amex_alert(message['body'])
                if alert is None:
                    logger.warning(f"Amex email {message_id} has no body, skipping")
                    result['skipped'] += 1
                    continue

                transaction = build_transaction(
                    'gmail',
                    date=message['date'],
                    type='purchase',
                    amount=alert.amount,
                    supplier=alert.merchant,
                    merchant=alert.merchant,
                    payment_method='amex',
                    notes=f"Amex purchase - {message['subject'] or 'No Subject'} (Card ending in {alert.card_last4})",
                    email_id=message_id,
                    draft=True,
                    status='completed',
                )
                self.db.add(transaction)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.error(f"Error recording Amex email {message_id}: {e}")
                result['errors'] += 1
                continue

            result['processed'] += 1
            result['transactions'].append(transaction.transaction_id)

        self._mark_synced(AMEX_SYNC_SOURCE, {
            'created': result['processed'], 'updated': 0, 'skipped': result['skipped'],
        })
        logger.info(
            f"Amex check: found={result['total_found']}, created={result['processed']}, "
            f"skipped={result['skipped']}, errors={result['errors']}"
        )
        return result


def check_emails_internal(since_days: Optional[int] = None, service: Any = None) -> Dict[str, Any]:
    """Run both Gmail checks - called by the scheduler and the API endpoint."""
    db = SessionLocal()
    try:
        checker = EmailChecker(db, service or get_gmail_service())
        supplier_results = checker.check_supplier_emails(since_days)
        amex_results = checker.check_amex_emails(since_days)
        return {
            'emails_processed': supplier_results['processed'] + amex_results['processed'],
            'supplier': supplier_results,
            'amex': amex_results,
        }
    finally:
        db.close()


def main():
    """Main ingestion loop."""
    logging.basicConfig(level=getattr(logging, settings.log_level))
    interval = settings.email_check_interval_minutes * 60
    logger.info(f"Starting Gmail ingestion (interval: {settings.email_check_interval_minutes} minutes)")

    while True:
        try:
            result = check_emails_internal()
            logger.info(f"Email check complete: {result['emails_processed']} new items")
        except KeyboardInterrupt:
            logger.info("Ingestion stopped")
            break
        except Exception as e:
            logger.error(f"Error in ingestion loop: {e}", exc_info=True)
        time.sleep(interval)


if __name__ == "__main__":
    main()
