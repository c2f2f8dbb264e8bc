import json
import logging

import requests

from config.settings import (
    CONFLICT_RETRY_ATTEMPTS,
    DEFAULT_DOWNVOTE_THRESHOLD,
    SPOTIFY_MAX_RETRIES,
    SPOTIFY_TIMEOUT_SECONDS,
)

TELEGRAM_TIMEOUT_SECONDS = 15


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def _is_positive_int(value):
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    spotify = config.get("spotify")
    if spotify is not None and not isinstance(spotify, dict):
        errors.append("spotify must be an object")
    elif isinstance(spotify, dict):
        for key in ("client_id", "client_secret"):
            value = spotify.get(key)
            if value is not None and not isinstance(value, str):
                errors.append(f"spotify.{key} must be a string")
        timeout_sec = spotify.get("timeout_sec")
        if timeout_sec is not None:
            if isinstance(timeout_sec, bool) or not isinstance(timeout_sec, (int, float)):
                errors.append("spotify.timeout_sec must be a number")
            elif timeout_sec <= 0:
                errors.append("spotify.timeout_sec must be > 0")
        max_retries = spotify.get("max_retries")
        if max_retries is not None:
            if isinstance(max_retries, bool) or not isinstance(max_retries, int):
                errors.append("spotify.max_retries must be an integer")
            elif max_retries < 0:
                errors.append("spotify.max_retries must be >= 0")

    telegram = config.get("telegram")
    if telegram is not None and not isinstance(telegram, dict):
        errors.append("telegram must be an object")
    elif isinstance(telegram, dict):
        enabled = telegram.get("enabled")
        if enabled is not None and not isinstance(enabled, bool):
            errors.append("telegram.enabled must be true/false")
        bot_token = telegram.get("bot_token")
        if bot_token is not None and not isinstance(bot_token, str):
            errors.append("telegram.bot_token must be a string")
        if enabled and not bot_token:
            errors.append("telegram.bot_token is required when telegram is enabled")

    threshold = config.get("default_downvote_threshold")
    if threshold is not None and not _is_positive_int(threshold):
        errors.append("default_downvote_threshold must be a positive integer")

    attempts = config.get("conflict_retry_attempts")
    if attempts is not None and not _is_positive_int(attempts):
        errors.append("conflict_retry_attempts must be a positive integer")

    return errors


def spotify_settings(config):
    spotify = (config or {}).get("spotify") or {}
    return {
        "client_id": spotify.get("client_id") or None,
        "client_secret": spotify.get("client_secret") or None,
        "timeout_sec": float(spotify.get("timeout_sec") or SPOTIFY_TIMEOUT_SECONDS),
        "max_retries": int(spotify["max_retries"]) if spotify.get("max_retries") is not None else SPOTIFY_MAX_RETRIES,
    }


def default_threshold(config):
    return int((config or {}).get("default_downvote_threshold") or DEFAULT_DOWNVOTE_THRESHOLD)


def conflict_retry_attempts(config):
    return int((config or {}).get("conflict_retry_attempts") or CONFLICT_RETRY_ATTEMPTS)


def telegram_notify(config, chat_id, message):
    """Post ``message`` to a Telegram chat; returns False instead of raising."""
    telegram = config.get("telegram") if isinstance(config, dict) else None
    if not telegram or not message or not chat_id:
        return False
    if telegram.get("enabled") is False:
        return False
    bot_token = telegram.get("bot_token")
    if not bot_token:
        return False
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {"chat_id": chat_id, "text": message}
    try:
        resp = requests.post(url, json=payload, timeout=TELEGRAM_TIMEOUT_SECONDS)
        if resp.ok:
            return True
        logging.warning("Telegram notify failed: %s", resp.text)
    except requests.RequestException:
        logging.exception("Telegram notify failed")
    return False
