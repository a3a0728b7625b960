"""Direct Ark (Volcengine) connectivity check.

Usage:
  python3 check_ai_connection.py
"""

import sys

import requests

from ai_service import ARK_API_URL, reply_text
from settings import BACKEND_DIR, load_settings


def main() -> int:
    settings = load_settings()
    if not settings.ark_api_key:
        print(f'Checked env file: {BACKEND_DIR / ".env"}')
        print('ERROR: ARK_API_KEY / API_KEY is not set.')
        return 1

    payload = {
        'model': settings.ark_model,
        'messages': [{'role': 'user', 'content': 'Reply with exactly OK'}],
        'thinking': {'type': 'disabled'},
    }

    try:
        response = requests.post(
            ARK_API_URL,
            headers={
                'Authorization': f'Bearer {settings.ark_api_key}',
                'Content-Type': 'application/json',
            },
            json=payload,
            timeout=60,
        )
    except requests.RequestException as exc:
        print(f'ERROR: Network/connectivity issue: {exc}')
        return 2

    print(f'Status: {response.status_code}')
    if response.status_code >= 400:
        print('ERROR: Ark request failed')
        print(response.text)
        return 3

    data = response.json()
    print(f'Model: {data.get("model", settings.ark_model)}')
    print(f'Output: {reply_text(data)!r}')
    return 0


if __name__ == '__main__':
    sys.exit(main())
