#!/usr/bin/env python3
"""Create the Gmail token the email checks run with.

Needs a browser, so run it on a workstation and ship the token file to the
path GMAIL_TOKEN_PATH names on the server.
"""
import argparse
import os
import sys

from dotenv import load_dotenv


def get_token(token_file=None, force=False):
    # settings read .env at import time
    from google.oauth2.credentials import Credentials
    from google_auth_oauthlib.flow import InstalledAppFlow

    from services.ingestion.gmail_helpers import SCOPES, client_config
    from shared import settings

    token_file = token_file or settings.gmail_token_path

    if os.path.isfile(token_file) and not force:
        creds = Credentials.from_authorized_user_file(token_file, SCOPES)
        if creds.valid or creds.refresh_token:
            print(f"✅ {token_file} is usable (read-only Gmail scope), nothing to do")
            print("   Pass --force to authorize again.")
            return

    if not (settings.gmail_client_id and settings.gmail_client_secret):
        print("❌ GMAIL_CLIENT_ID and GMAIL_CLIENT_SECRET must be set (environment or .env)")
        sys.exit(1)

    print("🌐 Opening a browser for Gmail authorization...")
    print("   Use the mailbox that receives supplier invoices and Amex purchase alerts.")
    creds = InstalledAppFlow.from_client_config(client_config(), SCOPES).run_local_server(port=0)

    with open(token_file, 'w') as f:
        f.write(creds.to_json())
    print(f"✅ Token written to {token_file}")


if __name__ == "__main__":
    load_dotenv()

    parser = argparse.ArgumentParser(description="Authorize Gmail access for the email checks")
    parser.add_argument('--token-file', help="Where to write the token (default: GMAIL_TOKEN_PATH)")
    parser.add_argument('--force', action='store_true', help="Authorize again even if a token exists")
    args = parser.parse_args()

    get_token(args.token_file, args.force)
