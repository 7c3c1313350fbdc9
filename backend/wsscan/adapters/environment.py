from __future__ import annotations

import base64
import binascii
import os
from typing import Mapping
from urllib.parse import urlsplit, urlunsplit

from wsscan.config import Settings

ENV_PLATFORM_URL = "JF_PLATFORM_URL"
ENV_TOKEN = "JF_TOKEN"
ENV_USER = "JF_USER"
ENV_PASSWORD = "JF_PASS"
ENV_LOG_DIR = "AM_LOG_DIRECTORY"
ENV_LOG_LEVEL = "JFROG_CLI_LOG_LEVEL"
ENV_HTTP_PROXY = "HTTP_PROXY"
ENV_HTTPS_PROXY = "HTTPS_PROXY"

_ANALYZER_LOG_LEVELS = {
    "DEBUG": "DEBUG",
    "INFO": "INFO",
    "WARN": "WARN",
    "WARNING": "WARN",
    "ERROR": "ERROR",
    "CRITICAL": "ERROR",
}


def to_analyzer_log_level(level: str) -> str:
    return _ANALYZER_LOG_LEVELS.get(level.upper(), "INFO")


def add_proxy_auth(url: str, authorization: str | None) -> str:
    """
    Attach proxy credentials to a proxy URL. Basic credentials are embedded in the
    URL authority, a bearer token is appended as an ``access_token`` query parameter.
    """
    if not authorization:
        return url
    if authorization.startswith("Basic "):
        try:
            user_info = base64.b64decode(authorization[len("Basic "):], validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return url
        parts = urlsplit(url)
        host = parts.netloc.rsplit("@", 1)[-1]
        return urlunsplit(parts._replace(netloc=f"{user_info}@{host}"))
    if authorization.startswith("Bearer "):
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}access_token={authorization[len('Bearer '):]}"
    return url


def build_analyzer_env(
    settings: Settings,
    log_dir: str | None = None,
    base_env: Mapping[str, str] | None = None,
    extra: Mapping[str, str] | None = None,
) -> dict[str, str] | None:
    """
    Build the analyzer process environment.

    Returns ``None`` when the credentials are incomplete, in which case the run
    must be skipped altogether.
    """
    if not settings.has_complete_credentials():
        return None

    env = dict(os.environ if base_env is None else base_env)
    env.update(extra or {})
    env[ENV_LOG_LEVEL] = to_analyzer_log_level(settings.log_level)
    env[ENV_PLATFORM_URL] = settings.platform_url or ""
    if settings.access_token:
        env[ENV_TOKEN] = settings.access_token
    else:
        env.pop(ENV_TOKEN, None)
        env[ENV_USER] = settings.username or ""
        env[ENV_PASSWORD] = settings.password or ""

    if settings.http_proxy:
        env[ENV_HTTP_PROXY] = add_proxy_auth(settings.http_proxy, settings.proxy_authorization)
    if settings.https_proxy:
        env[ENV_HTTPS_PROXY] = add_proxy_auth(settings.https_proxy, settings.proxy_authorization)
    if log_dir:
        env[ENV_LOG_DIR] = log_dir
    return env
