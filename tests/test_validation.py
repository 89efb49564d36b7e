"""Tests for input validation helpers."""

import pytest

from server_provisioner.exceptions import ValidationError
from server_provisioner.utils.validation import (
    Validator,
    default_username,
    is_valid_domain,
    is_valid_email,
    normalize_ip,
    sanitize_project_name,
    sanitize_username,
)

ED25519_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl admin@laptop"


def test_sanitize_project_name():
    assert sanitize_project_name("My App") == "my-app"
    assert sanitize_project_name("  API Service  ") == "api-service"
    assert sanitize_project_name(sanitize_project_name("My App")) == "my-app"


def test_sanitize_username():
    assert sanitize_username("My_App.User") == "myappuser"
    assert sanitize_username("shop-user") == "shop-user"


@pytest.mark.parametrize(
    "project, expected",
    [
        ("my-app", "my-app-user"),
        ("twelve-chars", "twelve-chars-user"),
        ("thirteen-char", "app-user"),
    ],
)
def test_default_username(project, expected):
    assert default_username(project) == expected


@pytest.mark.parametrize(
    "domain",
    ["example.com", "sub.example.co.uk", "a-b.example.io", "x1.dev"],
)
def test_valid_domains(domain):
    assert is_valid_domain(domain)


@pytest.mark.parametrize(
    "domain",
    ["", "localhost", "-bad-.com", "bad-.com", "no spaces.com", "example.c", "example.123", None],
)
def test_invalid_domains(domain):
    assert not is_valid_domain(domain)


def test_validate_domain_lowercases():
    assert Validator.validate_domain("Example.COM") == "example.com"
    with pytest.raises(ValidationError):
        Validator.validate_domain("not a domain")


def test_email_validation():
    assert is_valid_email("a@b.co")
    assert not is_valid_email("a@b")
    assert not is_valid_email("a.com")
    assert is_valid_email("admin@example.com")
    assert is_valid_email("first.last+tag@mail.example.org")
    assert not is_valid_email("admin@example")
    assert not is_valid_email("admin.example.com")
    with pytest.raises(ValidationError):
        Validator.validate_email("@example.com")


def test_validate_public_key():
    assert Validator.validate_public_key(f"  {ED25519_KEY}\n") == ED25519_KEY


@pytest.mark.parametrize(
    "key",
    ["", "AAAAC3NzaC1lZDI1NTE5", "ssh-foo AAAA", "ssh-rsa not*base64", "ssh-ed25519"],
)
def test_malformed_public_key_rejected(key):
    with pytest.raises(ValidationError):
        Validator.validate_public_key(key)


@pytest.mark.parametrize("username", ["app-user", "_svc", "shop1"])
def test_valid_usernames(username):
    Validator.validate_username(username)


@pytest.mark.parametrize("username", ["", "1app", "App", "a" * 33])
def test_invalid_usernames(username):
    with pytest.raises(ValidationError):
        Validator.validate_username(username)


def test_normalize_ip():
    assert normalize_ip(" 203.0.113.10\n") == "203.0.113.10"
    assert normalize_ip("2001:DB8:0:0::1") == "2001:db8::1"
    assert normalize_ip("not-an-ip") is None
