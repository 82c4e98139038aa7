"""
Normalisation des callbacks fournisseurs.
- classify_caller: navigateur (redirection) ou serveur (JSON); cas ambigu => serveur
- parse_callback_fields: GET query, POST JSON, POST formulaire, POST brut -> dict de champs
"""
import enum
import json
import urllib.parse
from typing import Any, Dict, Mapping, Optional

BROWSER_MARKERS = ("mozilla/", "chrome/", "safari/", "firefox/", "edg/", "opera", "applewebkit")
SERVER_MARKERS = (
    "bot", "crawler", "spider", "curl", "wget", "python", "httpx", "requests", "okhttp",
    "java/", "go-http-client", "axios", "node-fetch", "postman", "stripe", "webhook",
)
MAX_RAW_TOKEN_LENGTH = 512


class CallerType(str, enum.Enum):
    BROWSER = "BROWSER"
    SERVER = "SERVER"


def classify_caller(headers: Mapping[str, str]) -> CallerType:
    """Unique point de décision navigateur/serveur, basé sur le User-Agent."""
    ua = (headers.get("user-agent") or "").lower()
    if not ua:
        return CallerType.SERVER
    if any(marker in ua for marker in SERVER_MARKERS):
        return CallerType.SERVER
    if any(marker in ua for marker in BROWSER_MARKERS):
        return CallerType.BROWSER
    return CallerType.SERVER

def _first_values(parsed: Dict[str, list]) -> Dict[str, Any]:
    return {k: v[0] for k, v in parsed.items() if v}

def _parse_form(text: str) -> Dict[str, Any]:
    return _first_values(urllib.parse.parse_qs(text, keep_blank_values=False))

def _parse_json(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        return {"token": value.strip()}
    return {}

def _parse_raw(text: str) -> Dict[str, Any]:
    """Corps sans content-type fiable: JSON, puis formulaire, puis token nu."""
    text = text.strip()
    if not text:
        return {}
    parsed = _parse_json(text)
    if parsed is not None:
        return parsed
    if "=" in text:
        return _parse_form(text)
    if len(text) <= MAX_RAW_TOKEN_LENGTH and not any(c.isspace() for c in text):
        return {"token": text}
    return {}

def parse_callback_fields(
    query_params: Mapping[str, Any],
    content_type: str = "",
    body: bytes = b"",
) -> Dict[str, Any]:
    """Les champs du corps priment sur ceux de la query string."""
    fields: Dict[str, Any] = dict(query_params)
    text = (body or b"").decode("utf-8", errors="replace").strip()
    if not text:
        return fields
    ctype = (content_type or "").lower()
    if "application/json" in ctype:
        parsed = _parse_json(text)
        if parsed is None:
            parsed = _parse_raw(text)
    elif "application/x-www-form-urlencoded" in ctype:
        parsed = _parse_form(text)
    else:
        parsed = _parse_raw(text)
    fields.update(parsed)
    return fields
