"""
Messaging provider gateways.

A gateway sends SMS/WhatsApp messages through a carrier and understands the
carrier's webhook payloads. Three variants share one capability set:

- TwilioGateway: talks to Twilio's REST API through the twilio SDK.
- AwsGateway: SNS for SMS and End User Messaging Social for WhatsApp,
  through boto3. Inbound events arrive as SNS notifications.
- MockGateway: dry-run mode, fabricates provider message ids.

The variant is chosen once at startup by build_gateway().

Twilio Concepts:
- MessageSid: provider identifier for a message, echoed in status callbacks
- X-Twilio-Signature: HMAC over the webhook URL and form parameters
- WhatsApp addresses carry a "whatsapp:" prefix

AWS Concepts:
- SNS wraps each inbound event as a JSON string in the envelope's Message
- WhatsApp sends take a Meta Cloud API message body as bytes
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import urlparse

from starlette.concurrency import run_in_threadpool

from chatrelay.config import Settings
from chatrelay.errors import ProviderError, ValidationError
from chatrelay.utils import WHATSAPP_PREFIX, strip_channel_prefix

logger = logging.getLogger(__name__)

# SNS signing certificates are only served from these hosts
SNS_CERT_HOST = re.compile(r"^sns\.[a-z0-9-]+\.amazonaws\.com(\.cn)?$")
WHATSAPP_META_API_VERSION = "v20.0"


@dataclass
class SendResult:
    """Outcome of a successful provider send."""
    provider_message_id: str
    status: str
    to_number: str
    from_number: str
    is_mock: bool = False


@dataclass
class InboundPayload:
    """Provider webhook payload normalized to plain phone numbers."""
    from_number: Optional[str]
    to_number: Optional[str]
    body: str = ""
    provider_message_id: Optional[str] = None
    num_media: int = 0
    media_urls: list[str] = field(default_factory=list)
    profile_name: Optional[str] = None
    status: Optional[str] = None


class MessagingGateway(Protocol):
    name: str

    async def send_sms(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult: ...

    async def send_whatsapp(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult: ...

    def validate_inbound_signature(self, url: str, params: Mapping[str, Any], signature: Optional[str]) -> bool: ...

    def parse_inbound_payload(self, form: Mapping[str, Any], kind: str) -> InboundPayload: ...

    def configuration_status(self) -> dict: ...


def _parse_int(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_twilio_payload(form: Mapping[str, str], kind: str) -> InboundPayload:
    """
    Normalize a Twilio webhook form body.

    Args:
        form: Form fields as posted by Twilio
        kind: sms, whatsapp, voice or status
    """
    if kind not in ("sms", "whatsapp", "voice", "status"):
        raise ValidationError(f"unsupported webhook type: {kind}")

    num_media = _parse_int(form.get("NumMedia"))
    media_urls = [
        form[f"MediaUrl{i}"] for i in range(num_media) if form.get(f"MediaUrl{i}")
    ]

    if kind == "voice":
        provider_id = form.get("CallSid")
    else:
        provider_id = form.get("MessageSid") or form.get("SmsSid")

    return InboundPayload(
        from_number=strip_channel_prefix(form.get("From")),
        to_number=strip_channel_prefix(form.get("To")),
        body=form.get("Body") or "",
        provider_message_id=provider_id,
        num_media=num_media,
        media_urls=media_urls,
        profile_name=form.get("ProfileName"),
        status=form.get("MessageStatus") or form.get("SmsStatus"),
    )


class TwilioGateway:
    """Twilio implementation of the messaging gateway."""

    name = "twilio"

    def __init__(self, settings: Settings, client=None):
        from twilio.rest import Client

        self.account_sid = settings.TWILIO_ACCOUNT_SID
        self.auth_token = settings.TWILIO_AUTH_TOKEN
        self.phone_number = settings.TWILIO_PHONE_NUMBER
        self.whatsapp_number = settings.TWILIO_WHATSAPP_NUMBER or settings.TWILIO_PHONE_NUMBER
        self.status_callback = f"{settings.WEBHOOK_BASE_URL.rstrip('/')}/webhooks/status"
        self._client = client or Client(self.account_sid, self.auth_token)
        logger.info("Twilio messaging gateway initialized")

    async def _create(self, to_number: str, from_number: str, body: str) -> SendResult:
        from twilio.base.exceptions import TwilioRestException

        try:
            message = await run_in_threadpool(
                self._client.messages.create,
                to=to_number,
                from_=from_number,
                body=body,
                status_callback=self.status_callback,
            )
        except TwilioRestException as e:
            logger.error(f"Twilio rejected message to {to_number}: code={e.code} {e.msg}")
            raise ProviderError(f"twilio error {e.code}: {e.msg}") from e

        logger.info(f"Message sent via Twilio. SID: {message.sid}, Status: {message.status}")
        return SendResult(
            provider_message_id=message.sid,
            status=message.status or "queued",
            to_number=to_number,
            from_number=from_number,
        )

    async def send_sms(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult:
        sender = from_number or self.phone_number
        if not sender:
            raise ProviderError("no sender phone number configured")
        logger.info(f"Sending SMS from {sender} to {to_number}")
        return await self._create(to_number, sender, body)

    async def send_whatsapp(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult:
        sender = from_number or self.whatsapp_number
        if not sender:
            raise ProviderError("no WhatsApp sender number configured")
        to_address = to_number if to_number.startswith(WHATSAPP_PREFIX) else f"{WHATSAPP_PREFIX}{to_number}"
        logger.info(f"Sending WhatsApp message from {sender} to {to_number}")
        return await self._create(to_address, f"{WHATSAPP_PREFIX}{sender}", body)

    def validate_inbound_signature(self, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
        from twilio.request_validator import RequestValidator

        if not signature:
            logger.error("No Twilio signature found in headers")
            return False
        is_valid = RequestValidator(self.auth_token).validate(url, dict(params), signature)
        if not is_valid:
            logger.error("Invalid Twilio signature")
        return is_valid

    def parse_inbound_payload(self, form: Mapping[str, str], kind: str) -> InboundPayload:
        return parse_twilio_payload(form, kind)

    def configuration_status(self) -> dict:
        return {
            "provider": self.name,
            "is_mock": False,
            "account_sid": f"{self.account_sid[:8]}..." if self.account_sid else None,
            "phone_number": self.phone_number,
            "whatsapp_number": self.whatsapp_number,
        }


def parse_sns_payload(envelope: Mapping[str, Any], kind: str) -> InboundPayload:
    """
    Normalize an SNS notification carrying an inbound SMS or WhatsApp event.

    SNS subscription confirmations are not messages; they are logged with
    their SubscribeURL and rejected.
    """
    if kind not in ("sms", "whatsapp", "status"):
        raise ValidationError(f"unsupported webhook type for aws: {kind}")

    envelope_type = envelope.get("Type")
    if envelope_type == "SubscriptionConfirmation":
        logger.warning(
            f"SNS subscription confirmation for {envelope.get('TopicArn')}; "
            f"confirm it at {envelope.get('SubscribeURL')}"
        )
        raise ValidationError("sns subscription confirmation is not a message")
    if envelope_type != "Notification" or not envelope.get("Message"):
        raise ValidationError("unsupported aws webhook format")

    message = envelope["Message"]
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except ValueError as e:
            raise ValidationError("sns message is not valid json") from e
    if not isinstance(message, dict):
        raise ValidationError("unsupported aws webhook format")

    if kind == "sms":
        return InboundPayload(
            from_number=strip_channel_prefix(message.get("originationNumber") or message.get("from")),
            to_number=strip_channel_prefix(message.get("destinationNumber") or message.get("to")),
            body=message.get("messageBody") or message.get("body") or "",
            provider_message_id=(
                message.get("inboundMessageId") or message.get("messageId") or envelope.get("MessageId")
            ),
        )

    if kind == "whatsapp":
        text = message.get("text")
        media = message.get("media")
        profile = message.get("profile")
        return InboundPayload(
            from_number=strip_channel_prefix(message.get("from") or message.get("sender")),
            to_number=strip_channel_prefix(message.get("to") or message.get("recipient")),
            body=(text.get("body") if isinstance(text, dict) else message.get("body")) or "",
            provider_message_id=message.get("id") or message.get("messageId"),
            num_media=1 if media else 0,
            media_urls=[media["url"]] if isinstance(media, dict) and media.get("url") else [],
            profile_name=profile.get("name") if isinstance(profile, dict) else None,
        )

    return InboundPayload(
        from_number=None,
        to_number=None,
        provider_message_id=message.get("messageId") or message.get("id"),
        status=message.get("status"),
    )


class AwsGateway:
    """
    AWS implementation of the messaging gateway.

    SMS goes through SNS publish. WhatsApp goes through End User Messaging
    Social and needs AWS_WHATSAPP_PHONE_NUMBER_ID on top of the credentials;
    without it WhatsApp sends are simulated like the mock gateway does.
    """

    name = "aws"

    def __init__(self, settings: Settings, sns_client=None, social_client=None):
        import boto3

        self.region = settings.AWS_REGION
        self.sms_sender_id = settings.AWS_SNS_SMS_SENDER_ID
        self.whatsapp_phone_number_id = settings.AWS_WHATSAPP_PHONE_NUMBER_ID
        self.topic_arn = settings.AWS_SNS_TOPIC_ARN

        client_kwargs = {
            "region_name": settings.AWS_REGION,
            "aws_access_key_id": settings.AWS_ACCESS_KEY_ID,
            "aws_secret_access_key": settings.AWS_SECRET_ACCESS_KEY,
        }
        self._sns = sns_client or boto3.client("sns", **client_kwargs)
        self._social = social_client
        if self._social is None and self.whatsapp_phone_number_id:
            self._social = boto3.client("socialmessaging", **client_kwargs)
        if self._social is None:
            logger.warning("AWS WhatsApp not configured. WhatsApp sends will be simulated.")
        self._simulated = MockGateway(whatsapp_number=self.whatsapp_phone_number_id)
        logger.info(f"AWS messaging gateway initialized in {self.region}")

    async def _call(self, operation, **kwargs) -> dict:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return await run_in_threadpool(operation, **kwargs)
        except ClientError as e:
            error = e.response.get("Error", {})
            logger.error(f"AWS rejected request: code={error.get('Code')} {error.get('Message')}")
            raise ProviderError(f"aws error {error.get('Code')}: {error.get('Message')}") from e
        except BotoCoreError as e:
            logger.error(f"AWS request failed: {e}")
            raise ProviderError(f"aws error: {e}") from e

    async def send_sms(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult:
        attributes = {
            "AWS.SNS.SMS.SMSType": {"DataType": "String", "StringValue": "Transactional"},
        }
        if self.sms_sender_id:
            attributes["AWS.SNS.SMS.SenderID"] = {"DataType": "String", "StringValue": self.sms_sender_id}
        if from_number:
            attributes["AWS.MM.SMS.OriginationNumber"] = {"DataType": "String", "StringValue": from_number}

        logger.info(f"Sending SMS via AWS SNS to {to_number}")
        response = await self._call(
            self._sns.publish, PhoneNumber=to_number, Message=body, MessageAttributes=attributes
        )
        logger.info(f"SMS sent via AWS SNS. MessageId: {response['MessageId']}")
        return SendResult(
            provider_message_id=response["MessageId"],
            status="sent",
            to_number=to_number,
            from_number=from_number or self.sms_sender_id or "",
        )

    async def send_whatsapp(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult:
        if self._social is None:
            logger.warning("AWS WhatsApp not configured. Simulating WhatsApp send.")
            return await self._simulated.send_whatsapp(to_number, body, from_number)

        recipient = strip_channel_prefix(to_number)
        message = {
            "messaging_product": "whatsapp",
            "to": recipient,
            "type": "text",
            "text": {"body": body},
        }
        logger.info(f"Sending WhatsApp message via AWS to {recipient}")
        response = await self._call(
            self._social.send_whatsapp_message,
            originationPhoneNumberId=self.whatsapp_phone_number_id,
            message=json.dumps(message).encode("utf-8"),
            metaApiVersion=WHATSAPP_META_API_VERSION,
        )
        logger.info(f"WhatsApp message sent via AWS. MessageId: {response['messageId']}")
        return SendResult(
            provider_message_id=response["messageId"],
            status="sent",
            to_number=recipient,
            from_number=from_number or self.whatsapp_phone_number_id,
        )

    def validate_inbound_signature(self, url: str, params: Mapping[str, Any], signature: Optional[str]) -> bool:
        """
        Check the SNS envelope comes from an SNS signing host and, when
        AWS_SNS_TOPIC_ARN is set, from that topic.

        The certificate signature itself is not verified.
        """
        if params.get("Type") not in ("Notification", "SubscriptionConfirmation"):
            logger.error("Missing or unknown SNS message type")
            return False
        cert_url = urlparse(params.get("SigningCertURL") or "")
        trusted_host = cert_url.scheme == "https" and SNS_CERT_HOST.match(cert_url.hostname or "")
        if not params.get("Signature") or not trusted_host:
            logger.error("SNS envelope is unsigned or signed by an unknown host")
            return False
        if self.topic_arn and params.get("TopicArn") != self.topic_arn:
            logger.error(f"SNS notification from unexpected topic {params.get('TopicArn')}")
            return False
        return True

    def parse_inbound_payload(self, form: Mapping[str, Any], kind: str) -> InboundPayload:
        return parse_sns_payload(form, kind)

    def configuration_status(self) -> dict:
        return {
            "provider": self.name,
            "is_mock": False,
            "region": self.region,
            "sms_sender_id": self.sms_sender_id,
            "whatsapp_configured": self._social is not None,
            "whatsapp_phone_number_id": self.whatsapp_phone_number_id,
        }


class MockGateway:
    """Dry-run gateway: accepts every send and fabricates a provider id."""

    name = "mock"

    def __init__(self, phone_number: Optional[str] = None, whatsapp_number: Optional[str] = None):
        self.phone_number = phone_number
        self.whatsapp_number = whatsapp_number or phone_number
        self.sent: list[SendResult] = []

    def _fabricate(self, prefix: str, to_number: str, from_number: Optional[str]) -> SendResult:
        result = SendResult(
            provider_message_id=f"{prefix}{uuid.uuid4().hex}",
            status="queued",
            to_number=to_number,
            from_number=from_number or "",
            is_mock=True,
        )
        self.sent.append(result)
        logger.warning(f"Mock provider: simulated send {result.provider_message_id} to {to_number}")
        return result

    async def send_sms(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult:
        return self._fabricate("SM", to_number, from_number or self.phone_number)

    async def send_whatsapp(self, to_number: str, body: str, from_number: Optional[str] = None) -> SendResult:
        return self._fabricate("WA", to_number, from_number or self.whatsapp_number)

    def validate_inbound_signature(self, url: str, params: Mapping[str, str], signature: Optional[str]) -> bool:
        return True

    def parse_inbound_payload(self, form: Mapping[str, str], kind: str) -> InboundPayload:
        return parse_twilio_payload(form, kind)

    def configuration_status(self) -> dict:
        return {
            "provider": self.name,
            "is_mock": True,
            "phone_number": self.phone_number,
            "whatsapp_number": self.whatsapp_number,
        }


def build_gateway(settings: Settings) -> MessagingGateway:
    """Select the gateway variant from configuration."""
    if settings.use_mock_provider:
        logger.info("Mock messaging gateway selected")
        return MockGateway(settings.TWILIO_PHONE_NUMBER, settings.TWILIO_WHATSAPP_NUMBER)

    if settings.MESSAGING_PROVIDER == "aws":
        if not settings.AWS_ACCESS_KEY_ID or not settings.AWS_SECRET_ACCESS_KEY:
            logger.warning(
                "AWS credentials not configured. All messaging will use mock mode. "
                "Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY to enable real delivery."
            )
            return MockGateway(settings.TWILIO_PHONE_NUMBER, settings.TWILIO_WHATSAPP_NUMBER)
        return AwsGateway(settings)

    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        logger.warning(
            "Twilio credentials not configured. All messaging will use mock mode. "
            "Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN to enable real delivery."
        )
        return MockGateway(settings.TWILIO_PHONE_NUMBER, settings.TWILIO_WHATSAPP_NUMBER)

    return TwilioGateway(settings)
