from __future__ import annotations

from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest
import requests

from lyria.auth.errors import DeliveryError
from lyria.auth.mailer import RESEND_API_URL, LogMailer, ResendMailer, build_mailer


def test_resend_posts_code_email() -> None:
    resp = MagicMock(status_code=200)
    with patch("lyria.auth.mailer.requests.post", return_value=resp) as post:
        ResendMailer("re_key", "LyriaSong <noreply@lyriasong.com>", timeout=3.0).send(
            "fan@example.com", "012345", "sign-in"
        )
    args, kwargs = post.call_args
    assert args[0] == RESEND_API_URL
    assert kwargs["headers"]["Authorization"] == "Bearer re_key"
    assert kwargs["timeout"] == 3.0
    assert kwargs["json"]["to"] == ["fan@example.com"]
    assert kwargs["json"]["subject"] == "Your LyriaSong sign-in code"
    assert "012345" in kwargs["json"]["html"]


def test_resend_rejection_is_delivery_error() -> None:
    with patch("lyria.auth.mailer.requests.post", return_value=MagicMock(status_code=422)):
        with pytest.raises(DeliveryError):
            ResendMailer("re_key", "a@b.c").send("fan@example.com", "012345", "sign-in")


def test_resend_timeout_is_delivery_error() -> None:
    with patch("lyria.auth.mailer.requests.post", side_effect=requests.Timeout("slow")):
        with pytest.raises(DeliveryError):
            ResendMailer("re_key", "a@b.c").send("fan@example.com", "012345", "sign-in")


def test_build_mailer_follows_config(cfg) -> None:
    assert isinstance(build_mailer(cfg), LogMailer)
    mailer = build_mailer(replace(cfg, resend_api_key="re_key"))
    assert isinstance(mailer, ResendMailer)
