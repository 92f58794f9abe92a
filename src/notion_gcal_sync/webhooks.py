"""Validation and parsing of incoming webhook deliveries."""

import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional, Union

from dateutil import parser as date_parser

from .errors import AuthError, ValidationError
from .models import CalendarNotification, DocumentNotification

NOTION_SIGNATURE_HEADER = 'X-Notion-Signature'
NOTION_VERIFICATION_TYPE = 'verification'

GOOGLE_CHANNEL_ID_HEADER = 'X-Goog-Channel-ID'
GOOGLE_CHANNEL_TOKEN_HEADER = 'X-Goog-Channel-Token'
GOOGLE_RESOURCE_ID_HEADER = 'X-Goog-Resource-ID'
GOOGLE_RESOURCE_STATE_HEADER = 'X-Goog-Resource-State'
GOOGLE_MESSAGE_NUMBER_HEADER = 'X-Goog-Message-Number'


def sign_notion_payload(body: bytes, verification_token: str) -> str:
    """Compute the ``sha256=<hex>`` signature Notion sends for a body."""
    digest = hmac.new(verification_token.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_notion_signature(body: bytes, signature: Optional[str], verification_token: Optional[str]) -> None:
    """Check the HMAC-SHA256 signature of a Notion webhook.

    Raises:
        AuthError: If the token is unknown or the signature is missing or wrong
    """
    if not verification_token:
        raise AuthError("No Notion verification token configured")
    if not signature:
        raise AuthError(f"Missing {NOTION_SIGNATURE_HEADER} header")
    expected = sign_notion_payload(body, verification_token)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        raise AuthError("Invalid Notion webhook signature")


def load_json_body(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body or b'{}')
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    return payload


def parse_notion_payload(payload: Dict[str, Any]) -> Union[DocumentNotification, str]:
    """Parse a Notion webhook body.

    Returns:
        The verification token for a verification request, otherwise the
        document notification

    Raises:
        ValidationError: If required fields are missing
    """
    if payload.get('verification_token') and payload.get('type', NOTION_VERIFICATION_TYPE) == NOTION_VERIFICATION_TYPE:
        return payload['verification_token']

    event_type = payload.get('type')
    entity = payload.get('entity') or {}
    page_id = entity.get('id')
    if not event_type or not page_id:
        raise ValidationError("Notion webhook payload needs 'type' and 'entity.id'")

    timestamp = payload.get('timestamp')
    try:
        parsed_timestamp = date_parser.isoparse(timestamp) if timestamp else None
    except ValueError:
        raise ValidationError(f"Invalid Notion webhook timestamp {timestamp!r}")

    return DocumentNotification(
        event_type=event_type,
        page_id=page_id,
        timestamp=parsed_timestamp,
        delivery_id=payload.get('id'),
    )


def parse_google_headers(
    headers: Mapping[str, str],
    expected_channel_id: Optional[str] = None,
    expected_token: Optional[str] = None
) -> CalendarNotification:
    """Parse and authenticate the headers of a Google push notification.

    Raises:
        ValidationError: If mandatory headers are missing
        AuthError: If the channel ID or token does not match
    """
    channel_id = headers.get(GOOGLE_CHANNEL_ID_HEADER)
    resource_state = headers.get(GOOGLE_RESOURCE_STATE_HEADER)
    if not channel_id or not resource_state:
        raise ValidationError("Missing Google channel headers")

    if expected_channel_id and channel_id != expected_channel_id:
        raise AuthError(f"Unknown Google channel {channel_id}")
    if expected_token and headers.get(GOOGLE_CHANNEL_TOKEN_HEADER) != expected_token:
        raise AuthError("Invalid Google channel token")

    message_number = headers.get(GOOGLE_MESSAGE_NUMBER_HEADER)
    try:
        message_number = int(message_number) if message_number else None
    except ValueError:
        raise ValidationError(f"Invalid {GOOGLE_MESSAGE_NUMBER_HEADER} {message_number!r}")

    return CalendarNotification(
        channel_id=channel_id,
        resource_id=headers.get(GOOGLE_RESOURCE_ID_HEADER),
        resource_state=resource_state,
        message_number=message_number,
    )
