import pytest

from claims.matching import digits_only, domains_match, email_domain, phones_match, website_domain


@pytest.mark.parametrize(
    "email, expected",
    [
        ("Owner@Kavarnia.com.ua", "kavarnia.com.ua"),
        ("a@b@shop.example.com", "shop.example.com"),
        ("no-at-sign.example.com", None),
        ("@example.com", None),
        ("owner@localhost", None),
        (None, None),
    ],
)
def test_email_domain(email, expected):
    assert email_domain(email) == expected


@pytest.mark.parametrize(
    "website, expected",
    [
        ("https://www.kavarnia.com.ua/menu", "kavarnia.com.ua"),
        ("kavarnia.com.ua", "kavarnia.com.ua"),
        ("http://Shop.Example.com:8080", "shop.example.com"),
        ("", None),
        (None, None),
    ],
)
def test_website_domain(website, expected):
    assert website_domain(website) == expected


def test_domains_match_exact_and_subdomain():
    owner = email_domain("owner@example.com")
    assert domains_match(owner, website_domain("https://shop.example.com"))
    assert not domains_match(owner, website_domain("https://otherbusiness.com"))
    assert domains_match("example.com", "example.com")
    assert domains_match("example.com", "shop.example.com")
    assert not domains_match("example.com", "badexample.com")
    assert not domains_match("shop.example.com", "example.com")
    assert not domains_match("example.com", None)


def test_phones_match_on_last_nine_digits():
    assert digits_only("+380 (67) 123-45-67") == "380671234567"
    assert phones_match("067 123 45 67", "+380 67 123 45 67")
    assert phones_match("+380671234567", "380-67-123-4567")
    assert not phones_match("067 123 45 68", "+380 67 123 45 67")


def test_short_phone_never_matches():
    assert not phones_match("1234567", "+380 67 123 4567")
    assert not phones_match("+380 67 123 45 67", None)
