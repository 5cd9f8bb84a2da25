"""Product and supplier resolution - maps invoice text onto catalog rows."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from rapidfuzz import fuzz
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from shared import Product, Supplier, NotFoundError
from services.extractor.patterns import MalformedRuleError, pattern_matches
from services.reconciler.smart_mapping import MappingTypes, SmartMappingService

logger = logging.getLogger(__name__)

AUTO_MATCH_SCORE = 90
SUGGESTION_SCORE = 60
MAX_SUGGESTIONS = 3


@dataclass
class Resolution:
    """How (and whether) an invoice product name resolved to a catalog product."""
    name: str
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    method: Optional[str] = None  # alias | mapping | exact | fuzzy
    score: float = 0.0
    suggestions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def resolved(self) -> bool:
        return self.product_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'productId': self.product_id,
            'productName': self.product_name,
            'method': self.method,
            'score': self.score,
            'suggestions': self.suggestions,
        }


class ProductResolver:
    """Resolves free-text product names against the catalog.

    Order: supplier alias, auto-confirmed smart mapping, exact catalog name,
    then fuzzy matching over catalog names.
    """

    def __init__(self, db: Session, mappings: Optional[SmartMappingService] = None):
        self.db = db
        self.mappings = mappings or SmartMappingService(db)
        self.products = self._load_products()

    def _load_products(self) -> List[Dict[str, Any]]:
        products = self.db.query(Product).filter(Product.active.isnot(False)).all()
        return [
            {
                'product_id': p.product_id,
                'name': p.name,
                'aliases': list(p.supplier_aliases or []),
            }
            for p in products
        ]

    def _by_id(self, product_id: Any) -> Optional[Dict[str, Any]]:
        for product in self.products:
            if str(product['product_id']) == str(product_id):
                return product
        return None

    def match_alias(self, name: str, supplier_id: Optional[int]) -> Optional[Dict[str, Any]]:
        if supplier_id is None:
            return None
        wanted = name.strip().lower()
        for product in self.products:
            for alias in product['aliases']:
                if alias.get('supplierId') == supplier_id and (alias.get('nameInInvoice') or '').strip().lower() == wanted:
                    return product
        return None

    def match_mapping(self, name: str) -> Optional[Dict[str, Any]]:
        for mapping_type in (MappingTypes.EMAIL_PRODUCT, MappingTypes.PRODUCT_NAMES):
            mapping = self.mappings.find_mapping(mapping_type, name)
            if self.mappings.is_auto_confirmed(mapping):
                product = self._by_id(mapping.target_id)
                if product:
                    return product
        return None

    def match_fuzzy(self, name: str):
        """Returns (product, score, suggestions) using rapidfuzz ratio over catalog names."""
        best = None
        best_score = 0.0
        suggestions = []
        wanted = name.strip().lower()

        for product in self.products:
            score = fuzz.ratio(wanted, product['name'].lower())
            if score > best_score:
                best_score = score
                best = product
            if score >= SUGGESTION_SCORE:
                suggestions.append({
                    'productId': product['product_id'],
                    'productName': product['name'],
                    'score': round(score, 1),
                })

        suggestions = sorted(suggestions, key=lambda x: x['score'], reverse=True)[:MAX_SUGGESTIONS]
        return best, best_score, suggestions

    def resolve(self, name: str, supplier_id: Optional[int] = None) -> Resolution:
        resolution = Resolution(name=name)
        if not name or not name.strip():
            return resolution

        product = self.match_alias(name, supplier_id)
        if product:
            return self._resolved(resolution, product, 'alias', 100.0)

        product = self.match_mapping(name)
        if product:
            return self._resolved(resolution, product, 'mapping', 100.0)

        wanted = name.strip().lower()
        for product in self.products:
            if product['name'].lower() == wanted:
                return self._resolved(resolution, product, 'exact', 100.0)

        product, score, suggestions = self.match_fuzzy(name)
        if product and score >= AUTO_MATCH_SCORE:
            logger.info(f"Fuzzy matched '{name}' -> {product['name']} (score: {score:.1f})")
            return self._resolved(resolution, product, 'fuzzy', score)

        resolution.score = score
        resolution.suggestions = suggestions
        return resolution

    @staticmethod
    def _resolved(resolution: Resolution, product: Dict[str, Any], method: str, score: float) -> Resolution:
        resolution.product_id = product['product_id']
        resolution.product_name = product['name']
        resolution.method = method
        resolution.score = score
        return resolution


def find_product_by_alias(db: Session, supplier_id: int, name_in_invoice: str) -> Optional[Product]:
    """Case-insensitive exact alias lookup within one supplier."""
    wanted = (name_in_invoice or '').strip().lower()
    if not wanted:
        return None
    for product in db.query(Product).all():
        if product.has_alias(supplier_id, wanted):
            return product
    return None


def register_supplier_alias(db: Session, product_id: int, supplier_id: int, name_in_invoice: str,
                            retries: int = 1) -> bool:
    """Add ``{supplierId, nameInInvoice}`` to a product if it is not there yet.

    Returns True when the alias was added, False when it already existed. A
    concurrent write to the same product surfaces as StaleDataError from the
    version check and is retried against the fresh row.
    """
    name_in_invoice = (name_in_invoice or '').strip()
    if not name_in_invoice:
        raise ValueError("Alias name must not be empty")

    attempt = 0
    while True:
        product = db.get(Product, product_id)
        if product is None:
            raise NotFoundError('Product', product_id)
        if db.get(Supplier, supplier_id) is None:
            raise NotFoundError('Supplier', supplier_id)
        if product.has_alias(supplier_id, name_in_invoice):
            return False

        product.supplier_aliases = list(product.supplier_aliases or []) + [
            {'supplierId': supplier_id, 'nameInInvoice': name_in_invoice}
        ]
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(f"Product {product_id} changed while adding alias, retrying")
            continue

        logger.info(f"Product {product_id}: added alias '{name_in_invoice}' for supplier {supplier_id}")
        return True


def confirm_product_match(db: Session, name_in_invoice: str, product_id: int,
                          supplier_id: Optional[int] = None) -> Dict[str, Any]:
    """Operator confirmed an invoice name belongs to a product: remember it both ways."""
    product = db.get(Product, product_id)
    if product is None:
        raise NotFoundError('Product', product_id)

    alias_added = False
    if supplier_id is not None:
        alias_added = register_supplier_alias(db, product_id, supplier_id, name_in_invoice)

    mapping = SmartMappingService(db).record_email_product_mapping(
        name_in_invoice, product.name, product.product_id, supplier_id
    )
    db.commit()
    return {
        'productId': product.product_id,
        'productName': product.name,
        'aliasAdded': alias_added,
        'mappingConfidence': mapping.confidence,
        'mappingUsageCount': mapping.usage_count,
    }


def _sender_address(sender: str) -> str:
    sender = (sender or '').strip().lower()
    if '<' in sender and '>' in sender:
        sender = sender[sender.index('<') + 1:sender.index('>')]
    return sender.strip()


def match_supplier_for_email(db: Session, sender: str, subject: Optional[str] = None) -> Optional[Supplier]:
    """Pick the supplier an invoice email came from. None when nothing matches."""
    address = _sender_address(sender)
    if not address:
        return None

    for supplier in db.query(Supplier).filter(Supplier.invoice_email.isnot(None)).all():
        invoice_email = supplier.invoice_email.strip().lower()
        # a blank address would match every sender
        if not invoice_email or invoice_email not in address:
            continue
        if supplier.invoice_subject_pattern and subject is not None:
            try:
                if not pattern_matches(supplier.invoice_subject_pattern, 'i', subject):
                    continue
            except MalformedRuleError as e:
                logger.warning(f"Supplier {supplier.supplier_id} subject pattern unusable: {e}")
        return supplier

    mapping = SmartMappingService(db).find_mapping(MappingTypes.EMAIL_SUPPLIER, address)
    if mapping:
        return db.query(Supplier).filter(Supplier.name == mapping.target).first()
    return None
