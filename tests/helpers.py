import json
from typing import Any, Callable, Dict

import httpx

from academy_payments.gateway import MonnifyClient

WEBHOOK_SECRET = "whsec_test_secret"
USER_ID = "a1b2c3d4-e5f6-7890-abcd-ef1234567890"


def monnify_envelope(body: Dict[str, Any], successful: bool = True, message: str = "success") -> Dict[str, Any]:
    return {
        "requestSuccessful": successful,
        "responseMessage": message,
        "responseCode": "0" if successful else "99",
        "responseBody": body,
    }


def successful_transaction_event(transaction_ref: str, payment_ref: str = "WEB3NOVA-X",
                                 amount: float = 20000.0, method: str = "CARD") -> bytes:
    return json.dumps({
        "eventType": "SUCCESSFUL_TRANSACTION",
        "eventData": {
            "transactionReference": transaction_ref,
            "paymentReference": payment_ref,
            "amountPaid": amount,
            "paymentMethod": method,
            "paymentStatus": "PAID",
        },
    }).encode()


def mock_monnify(routes: Dict[str, Callable[[httpx.Request], httpx.Response]], clock=None) -> MonnifyClient:
    """Build a MonnifyClient whose HTTP layer is served by `routes` keyed on URL path."""
    def handler(request: httpx.Request) -> httpx.Response:
        return routes[request.url.path](request)

    kwargs = {"clock": clock} if clock is not None else {}
    return MonnifyClient(
        base_url="https://sandbox.monnify.test",
        api_key="MK_TEST_KEY",
        secret_key="SK_TEST_SECRET",
        contract_code="1234567890",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
