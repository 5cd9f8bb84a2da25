"""Pattern extraction - per-supplier regex rules and CSS product selectors.

Supplier invoice formats are described by an ``email_parsing`` config stored on
the supplier row::

    {
        "total": {"pattern": "Total:\\s*\\$([\\d\\.]+)", "flags": "m", "groupIndex": 1,
                  "transform": "parseFloat"},
        "orderNumber": {...}, "subtotal": {...}, "shipping": {...}, "tax": {...}, "discount": {...},
        "contentBounds": {"startPattern": {"pattern": "Order Summary"}, "endPattern": {...}},
        "products": {"containerSelector": "tr.item", "nameSelector": "td.name",
                     "priceSelector": "td.price", "quantityPattern": "\\s+x\\s*(\\d+)\\s*$"}
    }

Every stored pattern goes through ``compile_rule`` and every match through
``_search`` so a broken or catastrophic pattern fails as ``MalformedRuleError``
instead of hanging the worker.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import regex
from bs4 import BeautifulSoup

from shared import settings

logger = logging.getLogger(__name__)

SCALAR_FIELDS = ('orderNumber', 'total', 'subtotal', 'shipping', 'tax', 'discount')

FLAG_MAP = {
    'i': regex.IGNORECASE,
    'm': regex.MULTILINE,
    's': regex.DOTALL,
    # str patterns are already unicode, and global/sticky have no meaning for a single search
    'u': 0,
    'g': 0,
    'y': 0,
}

DEFAULT_BOUNDS_FLAGS = 'i'
DEFAULT_QUANTITY_PATTERN = r'\s+x\s*(\d+)\s*$'
SKIPPED_PRODUCT_TEXT = ('click here',)

HEAD_END = regex.compile(r'</head\s*>', regex.IGNORECASE)
LEADING_FLOAT = regex.compile(r'[-+]?(?:\d+\.?\d*|\.\d+)')
LEADING_INT = regex.compile(r'[-+]?\d+')


class MalformedRuleError(ValueError):
    """A configured extraction rule cannot be compiled or executed."""

    def __init__(self, message: str, pattern: Optional[str] = None):
        self.pattern = pattern
        super().__init__(message)


def _clean_number_text(value: str) -> str:
    return value.strip().replace(',', '').lstrip('$£€ ')


def parse_amount(value: Any) -> Optional[float]:
    """Parse a leading decimal number, tolerating currency symbols and thousands separators."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = LEADING_FLOAT.match(_clean_number_text(str(value)))
    if not match:
        return None
    return float(match.group(0))


def parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = LEADING_INT.match(_clean_number_text(str(value)))
    if not match:
        return None
    return int(match.group(0))


def _identity(value: str) -> str:
    return value.strip()


TRANSFORMS: Dict[Optional[str], Callable[[str], Any]] = {
    None: _identity,
    '': _identity,
    'identity': _identity,
    'parseFloat': parse_amount,
    'float': parse_amount,
    'parseInt': parse_int,
    'int': parse_int,
}


def translate_flags(flags: Optional[str]) -> int:
    """Translate a flag string such as ``"im"`` into ``regex`` flags."""
    compiled = 0
    for letter in flags or '':
        if letter not in FLAG_MAP:
            raise MalformedRuleError(f"Unsupported regex flag '{letter}'")
        compiled |= FLAG_MAP[letter]
    return compiled


def compile_rule(pattern: str, flags: Optional[str] = ''):
    """Compile a stored pattern string. The only place stored patterns are compiled."""
    if not isinstance(pattern, str) or not pattern:
        raise MalformedRuleError("Pattern must be a non-empty string", pattern)
    if len(pattern) > settings.regex_max_pattern_length:
        raise MalformedRuleError(
            f"Pattern longer than {settings.regex_max_pattern_length} characters", pattern
        )
    try:
        return regex.compile(pattern, translate_flags(flags))
    except regex.error as e:
        raise MalformedRuleError(f"Invalid pattern {pattern!r}: {e}", pattern) from e


def _search(compiled, text: str):
    try:
        return compiled.search(text, timeout=settings.regex_timeout_seconds)
    except TimeoutError as e:
        raise MalformedRuleError(
            f"Pattern {compiled.pattern!r} timed out after {settings.regex_timeout_seconds}s",
            compiled.pattern,
        ) from e


def pattern_matches(pattern: str, flags: Optional[str], text: str) -> bool:
    return _search(compile_rule(pattern, flags), text or '') is not None


def _resolve_transform(name: Optional[str]) -> Callable[[str], Any]:
    try:
        return TRANSFORMS[name]
    except (KeyError, TypeError):
        raise MalformedRuleError(f"Unknown transform {name!r}")


def _field_rule(rule: Any) -> Dict[str, Any]:
    if not isinstance(rule, dict):
        raise MalformedRuleError(f"Rule must be an object with a pattern, got {type(rule).__name__}")
    return rule


def _group_key(group_index: Any):
    """Integer group, digit string or group name. JSON exports often store ``1`` as ``1.0``."""
    if isinstance(group_index, bool):
        raise MalformedRuleError(f"Invalid groupIndex {group_index!r}")
    if isinstance(group_index, int):
        return group_index
    if isinstance(group_index, float) and group_index.is_integer():
        return int(group_index)
    if isinstance(group_index, str) and group_index.strip():
        key = group_index.strip()
        return int(key) if key.isdigit() else key
    raise MalformedRuleError(f"Invalid groupIndex {group_index!r}")


def extract_field(body: str, rule: Optional[Dict[str, Any]]) -> Any:
    """Extract one field from ``body``. Returns None when the rule does not match.

    Raises MalformedRuleError for a rule that cannot be compiled or run.
    """
    if not rule:
        return None
    rule = _field_rule(rule)
    if not rule.get('pattern'):
        return None

    compiled = compile_rule(rule['pattern'], rule.get('flags', ''))
    transform = _resolve_transform(rule.get('transform'))
    group_index = rule.get('groupIndex')
    group_key = (1 if compiled.groups else 0) if group_index is None else _group_key(group_index)

    match = _search(compiled, body or '')
    if not match:
        return None

    try:
        value = match.group(group_key)
    except IndexError:
        # groupIndex past the capture groups, or an unknown group name
        return None

    if value is None:
        return None
    return transform(value)


def _as_rule(bound: Any) -> Optional[Dict[str, Any]]:
    if not bound:
        return None
    if isinstance(bound, str):
        return {'pattern': bound, 'flags': DEFAULT_BOUNDS_FLAGS}
    if isinstance(bound, dict):
        return bound
    logger.warning(f"Ignoring content bound of type {type(bound).__name__}")
    return None


def apply_content_bounds(body: str, bounds: Optional[Dict[str, Any]]) -> str:
    """Cut ``body`` down to the invoice section delimited by the configured start/end patterns.

    The end pattern is searched in what is left after the start cut, so an end
    marker that also appears before the start marker is not picked up.
    """
    if not body or not bounds:
        return body or ''

    result = body
    start_rule = _as_rule(bounds.get('startPattern'))
    if start_rule and start_rule.get('pattern'):
        try:
            match = _search(compile_rule(start_rule['pattern'], start_rule.get('flags', DEFAULT_BOUNDS_FLAGS)), result)
            if match:
                result = result[match.start():]
        except MalformedRuleError as e:
            logger.warning(f"Ignoring start bound: {e}")

    end_rule = _as_rule(bounds.get('endPattern'))
    if end_rule and end_rule.get('pattern'):
        try:
            match = _search(compile_rule(end_rule['pattern'], end_rule.get('flags', DEFAULT_BOUNDS_FLAGS)), result)
            if match:
                result = result[:match.end()]
        except MalformedRuleError as e:
            logger.warning(f"Ignoring end bound: {e}")

    return result


def strip_html_head(html: str) -> str:
    """Drop everything up to and including ``</head>``; style blocks confuse field patterns."""
    if not html:
        return ''
    match = HEAD_END.search(html)
    if not match:
        return html
    return html[match.end():]


def split_quantity(text: str, pattern: Optional[str] = None, flags: Optional[str] = 'i',
                   group_index: Any = 1) -> Tuple[str, int]:
    """Split a trailing quantity suffix ("Chew Toy x 3") off a product name."""
    text = (text or '').strip()
    compiled = compile_rule(pattern or DEFAULT_QUANTITY_PATTERN, flags)
    match = _search(compiled, text)
    if not match:
        return text, 1

    try:
        quantity = parse_int(match.group(_group_key(group_index)))
    except IndexError:
        quantity = None
    if not quantity or quantity < 1:
        quantity = 1

    name = (text[:match.start()] + text[match.end():]).strip()
    if not name and compiled.groups > 1 and _group_key(group_index) != 1:
        # pattern captured the whole line, name is the first group
        name = (match.group(1) or '').strip()
    return name or text, quantity


def _cost_discount(config: Dict[str, Any]) -> float:
    discount = config.get('costDiscount')
    if discount is None:
        # older configs stored this as wholesaleDiscount
        discount = config.get('wholesaleDiscount')
    discount = parse_amount(discount) or 0.0
    if discount < 0 or discount >= 1:
        return 0.0
    return discount


def extract_products(html: str, config: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Pull product lines out of the invoice HTML with the supplier's CSS selectors.

    Prices found here are kept as ``invoiceLineTotal`` for reference only; purchase
    cost is taken from the product catalog.
    """
    if not config or not config.get('containerSelector'):
        return []

    name_selector = config.get('nameSelector')
    price_selector = config.get('priceSelector')
    quantity_pattern = config.get('quantityPattern')
    quantity_flags = config.get('quantityFlags', 'i')
    quantity_group = config.get('quantityGroupIndex', 1)
    multiple = parse_int(config.get('quantityMultiple')) or 1
    discount = _cost_discount(config)

    # validate the quantity pattern once up front instead of per container
    compile_rule(quantity_pattern or DEFAULT_QUANTITY_PATTERN, quantity_flags)

    soup = BeautifulSoup(html or '', 'html.parser')
    try:
        containers = soup.select(config['containerSelector'])
    except Exception as e:
        raise MalformedRuleError(f"Invalid containerSelector {config['containerSelector']!r}: {e}") from e

    products = []
    seen = set()
    for container in containers:
        try:
            name_el = container.select_one(name_selector) if name_selector else container
        except Exception as e:
            raise MalformedRuleError(f"Invalid nameSelector {name_selector!r}: {e}") from e
        if name_el is None:
            continue

        raw_name = ' '.join(name_el.get_text(' ', strip=True).split())
        if not raw_name or any(skip in raw_name.lower() for skip in SKIPPED_PRODUCT_TEXT):
            continue

        name, quantity = split_quantity(raw_name, quantity_pattern, quantity_flags, quantity_group)
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)

        line = {'name': name, 'quantity': quantity * multiple}

        if price_selector:
            try:
                price_el = container.select_one(price_selector)
            except Exception as e:
                raise MalformedRuleError(f"Invalid priceSelector {price_selector!r}: {e}") from e
            if price_el is not None:
                price = parse_amount(price_el.get_text(strip=True))
                if price is not None:
                    line['invoiceLineTotal'] = round(price * (1 - discount), 2)

        products.append(line)

    return products


@dataclass
class ExtractionResult:
    """Outcome of running a supplier config over one email."""
    fields: Dict[str, Any] = field(default_factory=dict)
    products: List[Dict[str, Any]] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    def missing(self, expects_products: bool = True) -> List[str]:
        gaps = []
        if self.fields.get('total') is None:
            gaps.append('total')
        if expects_products and not self.products:
            gaps.append('products')
        return gaps


class PatternExtractor:
    """Runs a supplier's ``email_parsing`` config against an email body."""

    def __init__(self, config: Optional[Dict[str, Any]]):
        self.config = config or {}

    @property
    def expects_products(self) -> bool:
        return bool((self.config.get('products') or {}).get('containerSelector'))

    def prepare(self, body: str) -> str:
        return apply_content_bounds(strip_html_head(body or ''), self.config.get('contentBounds'))

    def extract(self, body: str) -> ExtractionResult:
        result = ExtractionResult()
        text = self.prepare(body)

        for name in SCALAR_FIELDS:
            rule = self.config.get(name)
            if not rule:
                continue
            try:
                value = extract_field(text, rule)
            except MalformedRuleError as e:
                logger.warning(f"Skipping field {name}: {e}")
                result.errors[name] = str(e)
                continue
            if value is not None:
                result.fields[name] = value

        if self.expects_products:
            try:
                result.products = extract_products(text, self.config['products'])
            except MalformedRuleError as e:
                logger.warning(f"Skipping products: {e}")
                result.errors['products'] = str(e)

        return result


def extract_fields(body: str, config: Optional[Dict[str, Any]]) -> ExtractionResult:
    return PatternExtractor(config).extract(body)


def validate_parsing_config(config: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Return field -> error for every rule in ``config`` that would fail to compile."""
    errors = {}
    config = config or {}
    for name in SCALAR_FIELDS:
        rule = config.get(name)
        if not rule:
            continue
        try:
            rule = _field_rule(rule)
            compile_rule(rule.get('pattern'), rule.get('flags', ''))
            _resolve_transform(rule.get('transform'))
            if rule.get('groupIndex') is not None:
                _group_key(rule['groupIndex'])
        except MalformedRuleError as e:
            errors[name] = str(e)

    for bound in ('startPattern', 'endPattern'):
        rule = _as_rule((config.get('contentBounds') or {}).get(bound))
        if not rule:
            continue
        try:
            compile_rule(rule.get('pattern'), rule.get('flags', DEFAULT_BOUNDS_FLAGS))
        except MalformedRuleError as e:
            errors[f'contentBounds.{bound}'] = str(e)

    products = config.get('products') or {}
    if products.get('quantityPattern'):
        try:
            compile_rule(products['quantityPattern'], products.get('quantityFlags', 'i'))
        except MalformedRuleError as e:
            errors['products.quantityPattern'] = str(e)

    return errors


def dry_run_parsing_config(body: str, config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Dry-run a config against a sample body, reporting what each rule matched."""
    config = config or {}
    extractor = PatternExtractor(config)
    text = extractor.prepare(body)
    report: Dict[str, Any] = {'boundedLength': len(text), 'fields': {}}

    for name in SCALAR_FIELDS:
        rule = config.get(name)
        if not rule:
            continue
        try:
            rule = _field_rule(rule)
            compiled = compile_rule(rule.get('pattern'), rule.get('flags', ''))
            match = _search(compiled, text)
            report['fields'][name] = {
                'matched': bool(match),
                'match': match.group(0) if match else None,
                'value': extract_field(text, rule),
            }
        except MalformedRuleError as e:
            report['fields'][name] = {'error': str(e)}

    if extractor.expects_products:
        try:
            report['products'] = extract_products(text, config['products'])
        except MalformedRuleError as e:
            report['products'] = {'error': str(e)}

    return report
