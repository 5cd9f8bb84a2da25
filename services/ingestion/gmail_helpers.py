"""Gmail helper functions - authenticated service, message search and body decoding."""
import os
import json
import logging
import base64
from datetime import datetime
from typing import List, Dict, Any, Optional

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from shared import settings

logger = logging.getLogger(__name__)

SCOPES = ['https://www.googleapis.com/auth/gmail.readonly']


def client_config() -> Dict[str, Any]:
    return {
        "installed": {
            "client_id": settings.gmail_client_id,
            "client_secret": settings.gmail_client_secret,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"]
        }
    }


def get_gmail_service(token_file: Optional[str] = None):
    """Get authenticated Gmail service, reusing the token cache.

    Refreshes an expired token and writes it back. Without a usable token this
    falls back to the installed-app flow, which needs a browser; on a server run
    ``get_gmail_token.py`` locally and mount the resulting token file instead.
    """
    token_file = token_file or settings.gmail_token_path
    creds = None

    if os.path.isfile(token_file):
        try:
            with open(token_file, 'r') as f:
                token_data = json.load(f)
            creds = Credentials.from_authorized_user_info(token_data, token_data.get('scopes', SCOPES))
            logger.info(f"Loaded existing Gmail token from {token_file}")
        except (ValueError, OSError) as e:
            logger.warning(f"Could not load Gmail token from {token_file}: {e}")
            creds = None

    if creds and creds.valid:
        return build('gmail', 'v1', credentials=creds)

    if creds and creds.expired and creds.refresh_token:
        logger.info("Refreshing expired Gmail token...")
        creds.refresh(Request())
    else:
        if not (settings.gmail_client_id and settings.gmail_client_secret):
            raise ValueError("Gmail credentials not found. Set GMAIL_CLIENT_ID/GMAIL_CLIENT_SECRET")
        flow = InstalledAppFlow.from_client_config(client_config(), SCOPES)
        try:
            creds = flow.run_local_server(port=0)
        except Exception as e:
            if "browser" in str(e).lower():
                raise ValueError(
                    "Gmail OAuth requires browser. Token not found or expired. "
                    "Please run 'python get_gmail_token.py' locally to generate token.json."
                )
            raise

    with open(token_file, 'w') as token:
        token.write(creds.to_json())
    logger.info(f"Gmail token saved to {token_file}")

    return build('gmail', 'v1', credentials=creds)


def search_messages(service: Any, query: str, max_results: int = 100) -> List[str]:
    """Search Gmail and return up to ``max_results`` message IDs, following pagination."""
    try:
        message_ids = []
        page_token = None

        while len(message_ids) < max_results:
            response = service.users().messages().list(
                userId='me',
                q=query,
                maxResults=min(100, max_results - len(message_ids)),
                pageToken=page_token
            ).execute()

            messages = response.get('messages', [])
            message_ids.extend([msg['id'] for msg in messages])

            page_token = response.get('nextPageToken')
            if not page_token:
                break

        logger.info(f"Found {len(message_ids)} messages matching query: {query}")
        return message_ids[:max_results]

    except HttpError as e:
        logger.error(f"Error searching messages: {e}")
        raise


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data.encode('ascii')).decode('utf-8', errors='ignore')


def extract_body(payload: Dict[str, Any]) -> str:
    """Message body, preferring the text/html part over text/plain."""
    html_parts = []
    text_parts = []

    def walk(part):
        mime_type = part.get('mimeType', '').lower()
        data = part.get('body', {}).get('data')
        if data:
            if mime_type == 'text/html':
                html_parts.append(_decode(data))
            elif mime_type == 'text/plain':
                text_parts.append(_decode(data))
        for nested in part.get('parts', []) or []:
            walk(nested)

    walk(payload)
    if html_parts:
        return "\n".join(html_parts)
    if text_parts:
        return "\n".join(text_parts)

    # single-part messages with an unexpected mime type
    data = payload.get('body', {}).get('data')
    return _decode(data) if data else ""


def _header(headers: List[Dict[str, str]], name: str) -> str:
    for header in headers:
        if header.get('name', '').lower() == name:
            return header.get('value', '')
    return ''


def fetch_message(service: Any, message_id: str) -> Dict[str, Any]:
    """Fetch one message as {emailId, date, subject, sender, body}."""
    message = service.users().messages().get(userId='me', id=message_id, format='full').execute()
    payload = message.get('payload', {})
    headers = payload.get('headers', [])

    internal_date = message.get('internalDate')
    date = datetime.utcfromtimestamp(int(internal_date) / 1000) if internal_date else datetime.utcnow()

    return {
        'emailId': message.get('id', message_id),
        'date': date,
        'subject': _header(headers, 'subject'),
        'sender': _header(headers, 'from'),
        'body': extract_body(payload),
    }
