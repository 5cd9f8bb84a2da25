"""American Express "Large Purchase Approved" alert parsing."""
import re
import logging
from dataclasses import dataclass
from typing import Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

AMOUNT_PATTERN = re.compile(r'\$(\d+,?\d*\.\d{2})\*', re.IGNORECASE)
CARD_PATTERN = re.compile(r'card ending in (\d{4})', re.IGNORECASE)
MERCHANT_COLOR = 'color:#006fcf'
UNKNOWN_MERCHANT = 'Unknown Merchant'
UNKNOWN_CARD = '****'


@dataclass
class AmexAlert:
    amount: float
    merchant: str
    card_last4: str


def _merchant(body: str) -> str:
    soup = BeautifulSoup(body, 'html.parser')
    for div in soup.find_all('div', style=True):
        style = div['style'].replace(' ', '').lower()
        if MERCHANT_COLOR not in style:
            continue
        paragraph = div.find('p')
        if paragraph is None:
            continue
        text = ' '.join(paragraph.get_text().split())
        if text:
            return text
    return UNKNOWN_MERCHANT


def parse_amex_alert(body: str) -> Optional[AmexAlert]:
    """Amount, merchant and card digits from an alert body. None for an empty body.

    The amount is the one printed as ``$1,234.56*``; when it is missing the alert
    is still returned with amount 0 so it can be completed by hand.
    """
    if not body or not body.strip():
        return None

    amount = 0.0
    match = AMOUNT_PATTERN.search(body)
    if match:
        amount = float(match.group(1).replace(',', ''))
    else:
        logger.warning("Amex alert without a recognizable amount")

    card = CARD_PATTERN.search(body)
    return AmexAlert(
        amount=amount,
        merchant=_merchant(body),
        card_last4=card.group(1) if card else UNKNOWN_CARD,
    )
