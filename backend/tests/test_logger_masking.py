from app.utils.logger import mask_secret, sanitize_credentials


def test_mask_secret_never_returns_full_value():
    assert mask_secret(None) == "<none>"
    assert mask_secret("") == "<none>"
    assert mask_secret("short") == "***"
    assert mask_secret("shpat_0123456789abcdef") == "shpa...cdef"


def test_sanitize_credentials_masks_callback_secrets():
    params = {
        "shop": "foo.myshopify.com",
        "code": "0907a61c0c8d55e99db179b68161bc00",
        "hmac": "700e2dadb827fcc8609e9d5ce208b2e9cdaab9df07390d2cbca10d7c328fc4bf",
        "timestamp": "1337178173",
    }

    sanitized = sanitize_credentials(params)

    assert sanitized["shop"] == "foo.myshopify.com"
    assert sanitized["timestamp"] == "1337178173"
    assert params["code"] not in str(sanitized)
    assert params["hmac"] not in str(sanitized)
    # The input is left untouched.
    assert params["code"] == "0907a61c0c8d55e99db179b68161bc00"


def test_sanitize_credentials_is_case_insensitive():
    sanitized = sanitize_credentials({"X-Shopify-Access-Token": "shpat_secret_value"})
    assert sanitized["X-Shopify-Access-Token"] == "shpa...alue"
    assert sanitize_credentials(None) == {}
