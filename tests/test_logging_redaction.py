from api.middleware.logging import LoggingMiddleware
from core.logging_config import redact_card_data


def test_card_fields_masked_at_any_depth():
    event = {
        "event": "authorizenet_submit",
        "payload": {
            "createTransactionRequest": {
                "merchantAuthentication": {"name": "login", "transactionKey": "secret"},
                "transactionRequest": {
                    "payment": {"creditCard": {"cardNumber": "4111111111111111", "cardCode": "123"}},
                },
            }
        },
        "cards": [{"card_number": "4007000000027", "cvv": "999"}],
        "card_last4": "1111",
    }

    redacted = redact_card_data(None, "info", event)

    card = redacted["payload"]["createTransactionRequest"]["transactionRequest"]["payment"]["creditCard"]
    assert card == {"cardNumber": "***", "cardCode": "***"}
    assert redacted["payload"]["createTransactionRequest"]["merchantAuthentication"]["transactionKey"] == "***"
    assert redacted["cards"] == [{"card_number": "***", "cvv": "***"}]
    assert redacted["card_last4"] == "1111"
    assert "4111111111111111" not in repr(redacted)


def test_request_body_sanitizer_masks_credit_card_block():
    middleware = LoggingMiddleware.__new__(LoggingMiddleware)
    body = {"customer_id": "cust_1", "credit_card": {"card_number": "4111111111111111"}, "amount": "1.00"}

    sanitized = middleware._sanitize_data(body)

    assert sanitized == {"customer_id": "cust_1", "credit_card": "***", "amount": "1.00"}
