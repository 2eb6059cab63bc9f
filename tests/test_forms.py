"""Input validation for the auth request bodies."""

import pytest

from conftest import signup_payload
from hikariauth.service.errors import ValidationError
from hikariauth.service.forms import (
    EmailForm,
    LoginForm,
    PasswordResetForm,
    ResendVerificationForm,
    SignupForm,
    TokenForm,
    normalize_email,
    parse_form,
)


def _signup_error(**overrides):
    with pytest.raises(ValidationError) as excinfo:
        parse_form(SignupForm, signup_payload(**overrides))
    return excinfo.value.message


class TestSignupForm:
    def test_valid_payload(self):
        form = parse_form(SignupForm, signup_payload(email="Alice@Example.com"))
        assert form.username == "alice"
        assert form.email == "alice@example.com"
        assert form.agree_terms is True

    def test_thirty_character_username_is_accepted(self):
        form = parse_form(SignupForm, signup_payload(username="a" * 30))
        assert form.username == "a" * 30

    @pytest.mark.parametrize(
        "username, message",
        [
            ("ab", "Username must be at least 3 characters"),
            ("a" * 31, "Username must be at most 30 characters"),
            (
                "bad name!",
                "Username can only contain letters, numbers, underscores, and hyphens",
            ),
        ],
    )
    def test_username_rules(self, username, message):
        assert _signup_error(username=username) == message

    def test_zero_width_characters_are_stripped(self):
        form = parse_form(SignupForm, signup_payload(username="al\u200bice"))
        assert form.username == "alice"

    def test_short_password(self):
        assert _signup_error(password="short", confirmPassword="short") == (
            "Password must be at least 8 characters"
        )

    def test_terms_required(self):
        assert _signup_error(agreeTerms=False) == "You must agree to the terms"

    def test_confirmation_must_match(self):
        assert _signup_error(confirmPassword="something-else") == "Passwords don't match"

    def test_invalid_email(self):
        assert _signup_error(email="alice@localhost") == "Invalid email address"

    def test_empty_body_reports_username_first(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_form(SignupForm, {})
        assert excinfo.value.message == "Username must be at least 3 characters"

    def test_non_text_values_are_rejected(self):
        with pytest.raises(ValidationError):
            parse_form(SignupForm, signup_payload(username=["alice"]))


class TestOtherForms:
    def test_login_defaults(self):
        form = parse_form(LoginForm, {"email": "a@example.com", "password": "x"})
        assert form.remember_me is False

    def test_login_accepts_remember_me_alias(self):
        form = parse_form(
            LoginForm, {"email": "a@example.com", "password": "x", "rememberMe": "true"}
        )
        assert form.remember_me is True

    def test_login_requires_password(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_form(LoginForm, {"email": "a@example.com", "password": ""})
        assert excinfo.value.message == "Password is required"

    def test_forgot_requires_valid_email(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_form(EmailForm, {})
        assert excinfo.value.message == "Invalid email address"

    def test_resend_has_its_own_missing_message(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_form(ResendVerificationForm, {"email": "   "})
        assert excinfo.value.message == "Email address is required"

    def test_token_required(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_form(TokenForm, {"token": "  "})
        assert excinfo.value.message == "Token is required"

    def test_reset_form_checks_confirmation(self):
        with pytest.raises(ValidationError) as excinfo:
            parse_form(
                PasswordResetForm,
                {"token": "t", "password": "long-enough", "confirmPassword": "different!"},
            )
        assert excinfo.value.message == "Passwords don't match"


@pytest.mark.parametrize(
    "raw",
    ["plain", "@example.com", "a@", "a@b", "a b@example.com", "a@-example.com", "x" * 65 + "@example.com"],
)
def test_normalize_email_rejects(raw):
    with pytest.raises(ValueError):
        normalize_email(raw)


def test_normalize_email_lowercases_and_trims():
    assert normalize_email("  Bob.Smith+chat@Mail.Example.ORG ") == "bob.smith+chat@mail.example.org"
