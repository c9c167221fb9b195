import pytest

from app.services.shop_domain import is_canonical_shop, sanitize_shop


@pytest.mark.parametrize("raw", [
    "foo",
    "FOO",
    "  foo  ",
    "foo.myshopify.com",
    "Foo.MyShopify.com",
    "https://foo.myshopify.com",
    "https://foo.myshopify.com/",
    "http://foo.myshopify.com/admin",
    "admin.shopify.com/store/foo",
])
def test_equivalent_forms_normalize_identically(raw):
    assert sanitize_shop(raw) == "foo.myshopify.com"


@pytest.mark.parametrize("raw", [
    None,
    "",
    "   ",
    "https://",
    "foo.myshopify.com.evil.com",
    "foo.myshopify.com:8443",
    "foo.myshopify.com?x=1",
    "foo.myshopify.com.myshopify.com",
    "evil@foo",
    "foo bar",
    "-foo",
    "foo-",
    "foo.evil",
])
def test_rejects_injection_and_garbage(raw):
    assert sanitize_shop(raw) is None


def test_sanitize_is_idempotent():
    for raw in ["foo", "https://Bar-Shop.myshopify.com/", "admin.shopify.com/store/baz"]:
        once = sanitize_shop(raw)
        assert once is not None
        assert sanitize_shop(once) == once
        assert is_canonical_shop(once)


def test_platform_domain_is_configurable():
    assert sanitize_shop("foo", platform_domain="platform.com") == "foo.platform.com"
    assert sanitize_shop("https://foo.platform.com/", platform_domain="platform.com") == "foo.platform.com"
    assert sanitize_shop("foo.platform.com.evil.io", platform_domain="platform.com") is None


def test_is_canonical_shop_requires_exact_form():
    assert is_canonical_shop("foo.myshopify.com")
    assert not is_canonical_shop("FOO.myshopify.com")
    assert not is_canonical_shop("foo")
    assert not is_canonical_shop(None)
