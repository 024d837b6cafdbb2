import requests
import base64
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime

from Crypto.Cipher import PKCS1_v1_5
from Crypto.PublicKey import RSA

from mpesa_config import MpesaConfig, ShortCodeType
from mpesa_exceptions import (
    AuthenticationError,
    EncryptionError,
    GatewayError,
    TransportError,
    ValidationError,
)

logger = logging.getLogger(__name__)

B2C_COMMAND_IDS = ("SalaryPayment", "BusinessPayment", "PromotionPayment")
C2B_RESPONSE_TYPES = ("Completed", "Cancelled")

# payment type -> (command id, receiver identifier type)
B2B_PAYMENT_TYPES = {
    "PaybillToPaybill": ("BusinessPayBill", "4"),
    "PaybillToTill": ("BusinessBuyGoods", "2"),
    "B2BAccountTopUp": ("BusinessPayToBulk", "4"),
}

KRA_SHORTCODE = "572572"


def format_phone_number(phone_number):
    """Normalise a Kenyan MSISDN to the 254XXXXXXXXX form Daraja expects.

    Accepts 712345678, 0712345678, 254712345678 and +254712345678.
    Anything else is rejected instead of guessed at.
    """
    if phone_number is None:
        raise ValidationError("Phone number is required")
    value = str(phone_number).replace(" ", "").strip()
    if value.startswith("+"):
        value = value[1:]
    if not value:
        raise ValidationError("Phone number is required")
    if not value.isdigit():
        raise ValidationError(f"Invalid phone number '{phone_number}'")

    if len(value) == 9:
        return f"254{value}"
    if len(value) == 10 and value.startswith("0"):
        return f"254{value[1:]}"
    if len(value) == 12 and value.startswith("254"):
        return value
    raise ValidationError(f"Invalid phone number '{phone_number}'. Expected 9 digits, 0XXXXXXXXX or 254XXXXXXXXX")


def generate_timestamp(now=None):
    return (now or datetime.now()).strftime('%Y%m%d%H%M%S')


def generate_password(business_shortcode, passkey, timestamp):
    data_to_encode = f"{business_shortcode}{passkey}{timestamp}"
    encoded_string = base64.b64encode(data_to_encode.encode())
    return encoded_string.decode('utf-8')


def generate_security_credential(initiator_password, certificate_path):
    """Encrypt the initiator password with the gateway's public certificate.

    Daraja only accepts PKCS#1 v1.5 padding; OAEP output is rejected
    remotely, never locally.
    """
    try:
        with open(certificate_path, "rb") as cert_file:
            cert_data = cert_file.read()
    except OSError as e:
        raise EncryptionError(f"Unable to read certificate {certificate_path}: {e}") from e

    try:
        public_key = RSA.import_key(cert_data)
        cipher = PKCS1_v1_5.new(public_key)
        encrypted = cipher.encrypt(initiator_password.encode())
    except (ValueError, IndexError, TypeError) as e:
        raise EncryptionError(f"Unable to encrypt initiator password: {e}") from e

    return base64.b64encode(encrypted).decode('utf-8')


def _require(value, label):
    if value is None or value == "" or value == 0:
        raise ValidationError(f"{label} is required")
    return value


def _format_date(value, label):
    _require(value, label)
    if isinstance(value, (date, datetime)):
        return value.strftime('%Y%m%d')
    value = str(value)
    if len(value) != 8 or not value.isdigit():
        raise ValidationError(f"{label} must be a date or YYYYMMDD, got '{value}'")
    return value


def _unique_ref(prefix):
    return f"{prefix}{uuid.uuid4().hex}"


@dataclass
class GatewayResponse:
    body: dict
    status_code: int


@dataclass
class MpesaSession:
    """Credentials derived once per client.

    Nothing here is refreshed on its own: the timestamp and the password
    derived from it, and the bearer token, go stale as the session ages.
    Daraja tokens expire after roughly an hour. Call
    ``MpesaClient.refresh_session()`` to rebuild them.
    """

    timestamp: str
    password: str
    security_credential: str
    access_token: str
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def age(self):
        return datetime.now() - self.created_at

    def is_stale(self, max_age):
        return self.age >= max_age


class MpesaClient:
    def __init__(self, config):
        if not isinstance(config, MpesaConfig):
            config = MpesaConfig.from_dict(config)
        self._config = config
        self._session = self._create_session()
        logger.info(
            "MpesaClient ready for shortcode %s (%s)",
            config.business_short_code,
            config.environment.value,
        )

    @property
    def config(self):
        return self._config

    @property
    def base_url(self):
        return self._config.base_url

    @property
    def session(self):
        return self._session

    @property
    def timestamp(self):
        return self._session.timestamp

    @property
    def password(self):
        return self._session.password

    @property
    def security_credential(self):
        return self._session.security_credential

    @property
    def access_token(self):
        return self._session.access_token

    def refresh_session(self):
        self._session = self._create_session()
        return self._session

    def _create_session(self):
        config = self._config
        timestamp = generate_timestamp()
        password = generate_password(config.business_short_code, config.pass_key, timestamp)
        security_credential = generate_security_credential(
            config.initiator_password, config.resolved_certificate_path
        )
        access_token = self.get_access_token()
        return MpesaSession(
            timestamp=timestamp,
            password=password,
            security_credential=security_credential,
            access_token=access_token,
        )

    def get_access_token(self):
        config = self._config
        api_url = f"{self.base_url}/oauth/v1/generate?grant_type=client_credentials"
        try:
            response = requests.get(api_url, auth=(config.consumer_key, config.consumer_secret))
        except requests.RequestException as e:
            logger.error("Access token request failed: %s", e)
            raise AuthenticationError(f"Failed to generate access token: {e}") from e

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}

        token = result.get('access_token')
        if response.status_code == 200 and token:
            logger.info("Access token acquired.")
            return token

        error_message = result.get('errorMessage', 'Unknown error occurred')
        logger.error("Failed to get access token (%s): %s", response.status_code, error_message)
        raise AuthenticationError(
            f"Failed to generate access token: {error_message}. Response: {response.text}"
        )

    def send_request(self, endpoint, payload):
        api_url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json"
        }
        logger.info("Sending request to %s", endpoint)
        try:
            response = requests.post(api_url, json=payload, headers=headers)
        except requests.RequestException as e:
            logger.error("No response from %s: %s", endpoint, e)
            raise TransportError(f"No response was received: {e}") from e

        if not response.text:
            if response.status_code == 200:
                raise TransportError(f"No response was received from {endpoint}")
            return GatewayResponse(body=None, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            logger.error("Invalid JSON from %s: %s", endpoint, response.text)
            raise GatewayError("Invalid Json Received", status_code=response.status_code) from e

        return GatewayResponse(body=body, status_code=response.status_code)

    def _post(self, endpoint, payload):
        result = self.send_request(endpoint, payload)
        if result.status_code != 200:
            error_message = None
            if isinstance(result.body, dict):
                error_message = result.body.get('errorMessage')
            message = f"Request failed with status {result.status_code}"
            if error_message:
                message = f"{message}: {error_message}"
            logger.error("%s failed: %s", endpoint, message)
            raise GatewayError(message, status_code=result.status_code, response=result.body)
        if not result.body:
            raise TransportError("No response received")
        return result.body

    def _identifier_type(self):
        return self._config.short_code_type.identifier_type

    def stk_push(self, amount, phone_number, account_reference, callback_url, description="STK Push Request"):
        config = self._config
        phone_number = format_phone_number(phone_number)
        _require(amount, "Amount")
        _require(account_reference, "Account reference")
        _require(callback_url, "Callback url")

        if config.short_code_type is ShortCodeType.PAYBILL:
            transaction_type = "CustomerPayBillOnline"
        else:
            transaction_type = "CustomerBuyGoodsOnline"

        payload = {
            "BusinessShortCode": config.business_short_code,
            "Password": self.password,
            "Timestamp": self.timestamp,
            "TransactionType": transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": config.business_short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description
        }
        return self._post("mpesa/stkpush/v1/processrequest", payload)

    def stk_push_query(self, checkout_request_id):
        _require(checkout_request_id, "Checkout request ID")
        payload = {
            "BusinessShortCode": self._config.business_short_code,
            "Password": self.password,
            "Timestamp": self.timestamp,
            "CheckoutRequestID": checkout_request_id
        }
        return self._post("mpesa/stkpushquery/v1/query", payload)

    def query_org_info(self, identifier_type, short_code):
        if identifier_type == "till":
            identifier = 2
        elif identifier_type == "paybill":
            identifier = 4
        else:
            raise ValidationError(f"Identifier type '{identifier_type}' is not supported")
        _require(short_code, "Short code")
        payload = {
            "IdentifierType": identifier,
            "Identifier": short_code
        }
        return self._post("sfcverify/v1/query/info", payload)

    def get_business_name(self):
        config = self._config
        info = self.query_org_info(config.short_code_type.value, config.business_short_code)
        if not isinstance(info, dict):
            raise GatewayError("Unexpected organisation info response", status_code=200, response=info)
        return info.get('OrganizationName')

    def generate_qr_code(self, amount, account_number, size=300):
        config = self._config
        _require(amount, "Amount")
        payload = {
            "MerchantName": self.get_business_name(),
            "RefNo": account_number,
            "Amount": amount,
            "TrxCode": "PB" if config.short_code_type is ShortCodeType.PAYBILL else "BG",
            "CPI": config.business_short_code,
            "Size": size
        }
        return self._post("mpesa/qrcode/v1/generate", payload)

    def register_url(self, response_type, confirmation_url, validation_url):
        if response_type not in C2B_RESPONSE_TYPES:
            raise ValidationError(f"Invalid response type. Must be one of: {', '.join(C2B_RESPONSE_TYPES)}")
        _require(confirmation_url, "Confirmation url")
        _require(validation_url, "Validation url")
        payload = {
            "ShortCode": self._config.business_short_code,
            "ResponseType": response_type,
            "ConfirmationURL": confirmation_url,
            "ValidationURL": validation_url
        }
        return self._post("mpesa/c2b/v2/registerurl", payload)

    def initiate_b2c(self, amount, phone_number, command_id, result_url, queue_timeout_url=None,
                     remarks="Business Payment"):
        config = self._config
        _require(amount, "Amount")
        phone_number = format_phone_number(phone_number)
        _require(result_url, "Result URL")
        if command_id not in B2C_COMMAND_IDS:
            raise ValidationError(f"Invalid command ID. Must be one of: {', '.join(B2C_COMMAND_IDS)}")

        payload = {
            "InitiatorName": config.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": command_id,
            "Amount": amount,
            "PartyA": config.business_short_code,
            "PartyB": phone_number,
            "Remarks": remarks,
            "QueueTimeOutURL": queue_timeout_url or result_url,
            "ResultURL": result_url,
            "Occasion": ""
        }
        return self._post("mpesa/b2c/v1/paymentrequest", payload)

    def transaction_status(self, transaction_id, result_url, queue_timeout_url=None):
        config = self._config
        _require(transaction_id, "Transaction ID")
        _require(result_url, "Result URL")
        payload = {
            "Initiator": config.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "TransactionStatusQuery",
            "TransactionID": transaction_id,
            "PartyA": config.business_short_code,
            "IdentifierType": self._identifier_type(),
            "ResultURL": result_url,
            "QueueTimeOutURL": queue_timeout_url or result_url,
            "Remarks": "Transaction Status Query",
            "Occasion": ""
        }
        return self._post("mpesa/transactionstatus/v1/query", payload)

    def account_balance(self, result_url, queue_timeout_url=None):
        config = self._config
        _require(result_url, "Result URL")
        payload = {
            "Initiator": config.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "AccountBalance",
            "PartyA": config.business_short_code,
            "IdentifierType": self._identifier_type(),
            "ResultURL": result_url,
            "QueueTimeOutURL": queue_timeout_url or result_url,
            "Remarks": "Account Balance Query",
            "Occasion": ""
        }
        return self._post("mpesa/accountbalance/v1/query", payload)

    def reverse_transaction(self, amount, transaction_id, result_url, queue_timeout_url=None):
        config = self._config
        _require(transaction_id, "Transaction ID")
        _require(amount, "Amount")
        _require(result_url, "Result URL")
        payload = {
            "Initiator": config.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "TransactionReversal",
            "TransactionID": transaction_id,
            "Amount": amount,
            "ReceiverParty": config.business_short_code,
            "RecieverIdentifierType": "11",
            "ResultURL": result_url,
            "QueueTimeOutURL": queue_timeout_url or result_url,
            "Remarks": "Transaction Reversal",
            "Occasion": ""
        }
        return self._post("mpesa/reversal/v1/request", payload)

    def tax_remittance(self, amount, payment_registration_no, result_url, queue_timeout_url=None):
        config = self._config
        _require(payment_registration_no, "Payment registration number")
        _require(amount, "Amount")
        _require(result_url, "Result URL")
        payload = {
            "Initiator": config.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "PayTaxToKRA",
            "SenderIdentifierType": "4",
            "RecieverIdentifierType": "4",
            "Amount": amount,
            "PartyA": config.business_short_code,
            "PartyB": KRA_SHORTCODE,
            "AccountReference": payment_registration_no,
            "Remarks": "Tax Remittance",
            "QueueTimeOutURL": queue_timeout_url or result_url,
            "ResultURL": result_url
        }
        return self._post("mpesa/b2b/v1/remittax", payload)

    def initiate_b2b(self, amount, payment_type, short_code, account_number, result_url, queue_timeout_url=None):
        config = self._config
        _require(short_code, "Short code")
        _require(amount, "Amount")
        if payment_type not in B2B_PAYMENT_TYPES:
            raise ValidationError(f"Payment type is invalid. Must be one of: {', '.join(B2B_PAYMENT_TYPES)}")
        _require(result_url, "Result URL")
        command_id, receiver_identifier_type = B2B_PAYMENT_TYPES[payment_type]

        payload = {
            "Initiator": config.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": command_id,
            "SenderIdentifierType": "4",
            "RecieverIdentifierType": receiver_identifier_type,
            "Amount": amount,
            "PartyA": config.business_short_code,
            "PartyB": short_code,
            "AccountReference": account_number,
            "Requester": config.requester,
            "Remarks": "OK",
            "QueueTimeOutURL": queue_timeout_url or result_url,
            "ResultURL": result_url
        }
        return self._post("mpesa/b2b/v1/paymentrequest", payload)

    def b2b_express_checkout(self, amount, receiver_short_code, callback_url, partner_name,
                             payment_ref=None, request_ref=None):
        _require(amount, "Amount")
        _require(receiver_short_code, "Short code")
        _require(partner_name, "Partner name")
        _require(callback_url, "Callback url")
        payload = {
            "PrimaryPartyCode": self._config.business_short_code,
            "ReceiverPartyCode": receiver_short_code,
            "Amount": amount,
            "CallBackUrl": callback_url,
            "RequestRefID": request_ref or _unique_ref("B2B_"),
            "PaymentRef": payment_ref or _unique_ref("PAYREFID_"),
            "PartnerName": partner_name
        }
        return self._post("v1/ussdpush/get-msisdn", payload)

    def create_standing_order(self, amount, phone_number, account_reference, start_date, end_date,
                              standing_order_name, callback_url, frequency="2", transaction_desc=None):
        """Create an M-Pesa Ratiba standing order.

        ``frequency`` follows Daraja's codes (1 one-off, 2 daily, 3 weekly,
        4 monthly, 5 bi-monthly, 6 quarterly, 7 half-year, 8 yearly).
        """
        config = self._config
        _require(amount, "Amount")
        phone_number = format_phone_number(phone_number)
        _require(account_reference, "Account reference")
        _require(callback_url, "Callback url")
        start_date = _format_date(start_date, "Start date")
        end_date = _format_date(end_date, "End date")
        _require(standing_order_name, "Standing order name")

        if config.short_code_type is ShortCodeType.PAYBILL:
            transaction_type = "Standing Order Customer Pay Bill"
        else:
            transaction_type = "Standing Order Customer Pay Marchant"

        payload = {
            "StandingOrderName": standing_order_name,
            "StartDate": start_date,
            "EndDate": end_date,
            "BusinessShortCode": config.business_short_code,
            "TransactionType": transaction_type,
            "ReceiverPartyIdentifierType": self._identifier_type(),
            "Amount": amount,
            "PartyA": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": transaction_desc or f"Payment to {config.business_short_code}",
            "Frequency": frequency,
            "Password": self.password,
            "Timestamp": self.timestamp
        }
        return self._post("mpesa/standingorders/v1/create", payload)
