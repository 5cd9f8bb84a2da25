"""Smart mappings - learned associations between free-text names and catalog entities."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from shared import settings, SmartMapping, NotFoundError

logger = logging.getLogger(__name__)


class MappingTypes:
    PRODUCT_NAMES = 'product_names'
    EMAIL_SUPPLIER = 'email_supplier'
    EMAIL_PRODUCT = 'email_product'

    ALL = (PRODUCT_NAMES, EMAIL_SUPPLIER, EMAIL_PRODUCT)


INITIAL_CONFIDENCE = 80.0
REPEAT_CONFIDENCE = 85.0
MIN_CONFIDENCE_AFTER_RETARGET = 60.0
RETARGET_PENALTY = 10.0
PRUNE_HEADROOM = 10
DEFAULT_MAX_RESULTS = 5


def normalize_source(source: str) -> str:
    return (source or '').lower().strip()


def mapping_score(confidence: float, usage_count: int) -> float:
    return min(100.0, confidence + min(20.0, usage_count / 5))


def mapping_to_dict(mapping: SmartMapping) -> Dict[str, Any]:
    return {
        'id': mapping.mapping_id,
        'mappingType': mapping.mapping_type,
        'source': mapping.source,
        'target': mapping.target,
        'targetId': mapping.target_id,
        'confidence': mapping.confidence,
        'usageCount': mapping.usage_count,
        'score': mapping.score,
        'lastUsed': mapping.last_used.isoformat() if mapping.last_used else None,
        'metadata': mapping.meta or {},
    }


class SmartMappingService:
    """Records operator matches and suggests them back on later imports.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, db: Session, max_mappings_per_type: Optional[int] = None):
        self.db = db
        self.max_mappings_per_type = max_mappings_per_type or settings.max_mappings_per_type

    def find_mapping(self, mapping_type: str, source: str) -> Optional[SmartMapping]:
        return self.db.query(SmartMapping).filter(
            SmartMapping.mapping_type == mapping_type,
            SmartMapping.source == normalize_source(source),
        ).first()

    def create_or_update_mapping(self, mapping_type: str, source: str, target: str,
                                 target_id: Optional[str] = None,
                                 metadata: Optional[Dict[str, Any]] = None) -> SmartMapping:
        if mapping_type not in MappingTypes.ALL:
            raise ValueError(f"Unknown mapping type: {mapping_type}")
        normalized = normalize_source(source)
        if not normalized:
            raise ValueError("Mapping source must not be empty")

        target_id = str(target_id) if target_id is not None else None
        now = datetime.utcnow()
        mapping = self.find_mapping(mapping_type, normalized)

        if mapping:
            original_confidence = mapping.confidence
            mapping.usage_count += 1
            mapping.last_used = now
            # score uses the confidence from before this use
            mapping.score = mapping_score(mapping.confidence, mapping.usage_count)
            if mapping.usage_count >= 2:
                mapping.confidence = REPEAT_CONFIDENCE

            if mapping.target != target:
                logger.info(f"Mapping '{normalized}' ({mapping_type}) retargeted {mapping.target!r} -> {target!r}")
                mapping.target = target
                mapping.target_id = target_id
                mapping.confidence = max(MIN_CONFIDENCE_AFTER_RETARGET, original_confidence - RETARGET_PENALTY)

            if metadata:
                mapping.meta = {**(mapping.meta or {}), **metadata}
            self.db.flush()
            return mapping

        self._prune_if_needed(mapping_type)
        mapping = SmartMapping(
            mapping_type=mapping_type,
            source=normalized,
            target=target,
            target_id=target_id,
            confidence=INITIAL_CONFIDENCE,
            usage_count=1,
            score=INITIAL_CONFIDENCE,
            last_used=now,
            meta=dict(metadata or {}),
        )
        self.db.add(mapping)
        self.db.flush()
        logger.info(f"Created {mapping_type} mapping '{normalized}' -> {target!r}")
        return mapping

    def _prune_if_needed(self, mapping_type: str) -> int:
        count = self.db.query(SmartMapping).filter(SmartMapping.mapping_type == mapping_type).count()
        if count < self.max_mappings_per_type:
            return 0

        to_remove = count - self.max_mappings_per_type + PRUNE_HEADROOM
        stale = self.db.query(SmartMapping.mapping_id).filter(
            SmartMapping.mapping_type == mapping_type
        ).order_by(
            SmartMapping.score.asc(),
            SmartMapping.usage_count.asc(),
            SmartMapping.last_used.asc(),
        ).limit(to_remove).all()

        ids = [row.mapping_id for row in stale]
        if ids:
            self.db.query(SmartMapping).filter(
                SmartMapping.mapping_id.in_(ids)
            ).delete(synchronize_session=False)
            logger.info(f"Pruned {len(ids)} old {mapping_type} mappings")
        return len(ids)

    def suggest_mappings(self, mapping_type: str, source: str,
                         max_results: int = DEFAULT_MAX_RESULTS) -> List[SmartMapping]:
        """Exact match alone if there is one, otherwise word-overlap matches ranked by trust."""
        normalized = normalize_source(source)
        exact = self.find_mapping(mapping_type, normalized)
        if exact:
            return [exact]

        words = [w for w in normalized.split() if len(w) > 2]
        if not words:
            return []

        return self.db.query(SmartMapping).filter(
            SmartMapping.mapping_type == mapping_type,
            or_(*[SmartMapping.source.contains(word, autoescape=True) for word in words]),
        ).order_by(
            SmartMapping.score.desc(),
            SmartMapping.usage_count.desc(),
        ).limit(max_results).all()

    def record_product_mapping(self, external_name: str, product_name: str, product_id) -> SmartMapping:
        return self.create_or_update_mapping(
            MappingTypes.PRODUCT_NAMES,
            external_name,
            product_name,
            product_id,
            {'lastMatchedAt': datetime.utcnow().isoformat()},
        )

    def record_email_product_mapping(self, invoice_name: str, product_name: str, product_id,
                                     supplier_id: Optional[int] = None) -> SmartMapping:
        metadata = {'lastMatchedAt': datetime.utcnow().isoformat()}
        if supplier_id is not None:
            metadata['supplierId'] = supplier_id
        return self.create_or_update_mapping(
            MappingTypes.EMAIL_PRODUCT, invoice_name, product_name, product_id, metadata
        )

    def record_email_supplier_mapping(self, email_pattern: str, supplier_name: str,
                                      metadata: Optional[Dict[str, Any]] = None) -> SmartMapping:
        return self.create_or_update_mapping(
            MappingTypes.EMAIL_SUPPLIER, email_pattern, supplier_name, None, metadata
        )

    def suggest_products_for_name(self, name: str,
                                  mapping_type: str = MappingTypes.PRODUCT_NAMES) -> List[Dict[str, Any]]:
        return [
            {'productId': m.target_id, 'productName': m.target, 'confidence': m.confidence}
            for m in self.suggest_mappings(mapping_type, name)
            if m.target_id
        ]

    def get_auto_confirmed_product_mappings(self, confidence_threshold: Optional[float] = None,
                                            min_usage_count: Optional[int] = None,
                                            mapping_type: str = MappingTypes.PRODUCT_NAMES) -> Dict[str, Dict[str, Any]]:
        """Mappings trusted enough to apply without review, keyed by normalized source."""
        if confidence_threshold is None:
            confidence_threshold = settings.mapping_confidence_threshold
        if min_usage_count is None:
            min_usage_count = settings.mapping_min_usage

        mappings = self.db.query(SmartMapping).filter(
            SmartMapping.mapping_type == mapping_type,
            SmartMapping.confidence >= confidence_threshold,
            SmartMapping.usage_count >= min_usage_count,
            SmartMapping.target_id.isnot(None),
        ).all()

        return {
            m.source: {
                'productId': m.target_id,
                'productName': m.target,
                'confidence': m.confidence,
                'usageCount': m.usage_count,
            }
            for m in mappings
        }

    def is_auto_confirmed(self, mapping: Optional[SmartMapping]) -> bool:
        return bool(
            mapping
            and mapping.target_id
            and mapping.confidence >= settings.mapping_confidence_threshold
            and mapping.usage_count >= settings.mapping_min_usage
        )

    def list_mappings(self, mapping_type: Optional[str] = None, limit: int = 100) -> List[SmartMapping]:
        query = self.db.query(SmartMapping)
        if mapping_type:
            query = query.filter(SmartMapping.mapping_type == mapping_type)
        return query.order_by(SmartMapping.score.desc(), SmartMapping.usage_count.desc()).limit(limit).all()

    def delete_mapping(self, mapping_id: int) -> None:
        mapping = self.db.get(SmartMapping, mapping_id)
        if mapping is None:
            raise NotFoundError('Smart mapping', mapping_id)
        self.db.delete(mapping)
        self.db.flush()
