"""Extraction worker - turns pending supplier invoice emails into purchase transactions."""
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from shared import settings, redis_client, SessionLocal, InvoiceEmail, Transaction, NotFoundError
from services.extractor.ai_parser import (
    AIInvoiceParser, build_parser_from_settings, normalize_ai_result, training_samples,
)
from services.extractor.patterns import PatternExtractor
from services.extractor.providers import ProviderError
from services.ledger.purchases import create_purchase_from_invoice
from services.reconciler.worker import ProductResolver, match_supplier_for_email

logger = logging.getLogger(__name__)

EXTRACTION_QUEUE = 'extraction_queue'


def _merge_ai_result(fields: Dict[str, Any], products: List[Dict[str, Any]], ai: Dict[str, Any]):
    """AI output only fills what the patterns did not find."""
    merged_fields = dict(fields)
    for name, value in ai['fields'].items():
        merged_fields.setdefault(name, value)
    merged_products = products if products else ai['products']
    return merged_fields, merged_products


def process_invoice_email(db: Session, invoice_email_id: int, parser: Optional[AIInvoiceParser] = None,
                          force_ai: bool = False, force: bool = False) -> Dict[str, Any]:
    """Run one invoice email through patterns, the AI fallback, product resolution and the ledger.

    Returns a summary dict; ``status`` is one of processed, incomplete, skipped.
    """
    email = db.get(InvoiceEmail, invoice_email_id)
    if email is None:
        raise NotFoundError('Invoice email', invoice_email_id)

    if email.status != 'pending' and not force:
        logger.info(f"Invoice email {email.email_id} is {email.status}, skipping")
        return {'status': 'skipped', 'invoice_email_id': invoice_email_id, 'reason': email.status}

    existing = db.query(Transaction).filter(
        Transaction.email_id == email.email_id,
        Transaction.type == 'purchase',
    ).first()
    if existing and not force:
        email.status = 'processed'
        email.transaction_id = existing.transaction_id
        db.commit()
        logger.info(f"Invoice email {email.email_id} already has transaction {existing.transaction_id}")
        return {'status': 'skipped', 'invoice_email_id': invoice_email_id, 'reason': 'already recorded',
                'transaction_id': existing.transaction_id}

    supplier = email.supplier
    if supplier is None:
        supplier = match_supplier_for_email(db, email.sender, email.subject)
        if supplier is not None:
            email.supplier_id = supplier.supplier_id

    extractor = PatternExtractor(supplier.email_parsing if supplier else None)
    result = extractor.extract(email.body)
    fields, products, errors = dict(result.fields), list(result.products), dict(result.errors)
    method = 'pattern'

    if force_ai or result.missing(expects_products=True):
        if parser is None:
            parser = build_parser_from_settings()
        if parser is None:
            errors['ai'] = 'AI parser not configured'
        else:
            examples = training_samples(supplier) if supplier else []
            try:
                ai = normalize_ai_result(parser.parse(extractor.prepare(email.body), examples))
            except (ProviderError, ValueError) as e:
                logger.error(f"AI parse failed for invoice email {email.email_id}: {e}")
                errors['ai'] = str(e)
            else:
                method = 'pattern+ai' if (result.fields or result.products) else 'ai'
                fields, products = _merge_ai_result(fields, products, ai)

    email.parse_method = method
    email.parse_errors = errors or None

    if fields.get('total') is None:
        db.commit()
        logger.warning(f"Invoice email {email.email_id}: no order total found, left pending")
        return {'status': 'incomplete', 'invoice_email_id': invoice_email_id, 'method': method,
                'fields': fields, 'products': products, 'errors': errors}

    resolver = ProductResolver(db)
    lines = []
    unresolved = []
    for product in products:
        line = dict(product)
        resolution = resolver.resolve(product['name'], supplier.supplier_id if supplier else None)
        if resolution.resolved:
            line['productId'] = resolution.product_id
        else:
            unresolved.append(resolution.to_dict())
        lines.append(line)

    transaction = create_purchase_from_invoice(db, email, supplier, fields, lines)
    db.commit()

    if unresolved:
        logger.info(f"Invoice email {email.email_id}: {len(unresolved)} product lines need review")

    return {
        'status': 'processed',
        'invoice_email_id': invoice_email_id,
        'transaction_id': transaction.transaction_id,
        'method': method,
        'fields': fields,
        'products': lines,
        'unresolved': unresolved,
        'errors': errors,
    }


def process_extraction_job(job_data: Dict, db: Session, parser: Optional[AIInvoiceParser] = None) -> bool:
    """Process a single extraction job."""
    try:
        summary = process_invoice_email(db, int(job_data['invoice_email_id']), parser=parser,
                                        force_ai=bool(job_data.get('force_ai')))
        logger.info(f"Extraction job for invoice email {job_data['invoice_email_id']}: {summary['status']}")
        return summary['status'] in ('processed', 'skipped')
    except Exception as e:
        logger.error(f"Error processing extraction job: {e}", exc_info=True)
        db.rollback()
        return False


def enqueue_invoice_email(invoice_email_id: int, force_ai: bool = False):
    redis_client.lpush(EXTRACTION_QUEUE, json.dumps({'invoice_email_id': invoice_email_id, 'force_ai': force_ai}))


def run_extractor_worker():
    """Main extraction worker loop."""
    logging.basicConfig(level=getattr(logging, settings.log_level))
    logger.info("Starting extraction worker...")
    parser = build_parser_from_settings()

    while True:
        try:
            # Get job from queue (blocking)
            job_json = redis_client.brpop(EXTRACTION_QUEUE, timeout=10)

            if job_json:
                job_data = json.loads(job_json[1])
                logger.info(f"Processing extraction job for invoice email {job_data.get('invoice_email_id')}")

                db = SessionLocal()
                try:
                    process_extraction_job(job_data, db, parser)
                finally:
                    db.close()

        except KeyboardInterrupt:
            logger.info("Extraction worker stopped")
            break
        except Exception as e:
            logger.error(f"Error in extraction worker: {e}")


if __name__ == "__main__":
    run_extractor_worker()
