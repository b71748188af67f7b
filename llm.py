import json
import logging
from typing import Any, Dict, Iterator, List

import requests

from config import CHAT_API_KEY, CHAT_API_URL, CHAT_MODEL, CHAT_TEMPERATURE, CHAT_TIMEOUT

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    pass


def _auth_headers() -> Dict[str, str]:
    if not CHAT_API_KEY:
        raise UpstreamError("CHAT_API_KEY is not set. Put it in .env and restart.")
    return {
        "Authorization": f"Bearer {CHAT_API_KEY}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _safe_json(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except Exception:
        return {"text": resp.text}


def _payload(messages: List[Dict[str, str]], stream: bool) -> Dict[str, Any]:
    return {
        "model": CHAT_MODEL,
        "messages": messages,
        "temperature": CHAT_TEMPERATURE,
        "stream": stream,
        "response_format": {"type": "json_object"},
    }


def chat_post(messages: List[Dict[str, str]], stream: bool = False) -> requests.Response:
    try:
        r = requests.post(
            f"{CHAT_API_URL}/v1/chat/completions",
            headers=_auth_headers(),
            json=_payload(messages, stream),
            stream=stream,
            timeout=CHAT_TIMEOUT,
        )
    except requests.RequestException as e:
        raise UpstreamError(str(e)) from e
    if r.status_code >= 400:
        body = _safe_json(r)
        r.close()
        raise UpstreamError(f"chat API returned {r.status_code}: {body}")
    return r


def chat_complete(messages: List[Dict[str, str]]) -> str:
    r = chat_post(messages)
    try:
        resp = r.json()
    except ValueError as e:
        raise UpstreamError(f"chat API returned a non-JSON body: {r.text[:200]}") from e
    choices = resp.get("choices") if isinstance(resp, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise UpstreamError(f"chat API returned no choices: {str(resp)[:200]}")
    msg = choices[0].get("message")
    if not isinstance(msg, dict):
        raise UpstreamError("chat API returned a choice without a message")
    return str(msg.get("content") or "")


def chat_stream(messages: List[Dict[str, str]]) -> Iterator[str]:
    """Yield content fragments from a streamed chat completion."""
    r = chat_post(messages, stream=True)
    r.encoding = "utf-8"
    try:
        for line in r.iter_lines(decode_unicode=True):
            if not line or not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if payload == "[DONE]":
                break
            try:
                chunk = json.loads(payload)
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable stream frame: %.200s", payload)
                continue
            if chunk.get("error"):
                err = chunk["error"]
                raise UpstreamError(err.get("message", str(err)) if isinstance(err, dict) else str(err))
            choices = chunk.get("choices") or []
            if not choices:
                continue
            text = (choices[0].get("delta") or {}).get("content")
            if text:
                yield text
    except requests.RequestException as e:
        raise UpstreamError(str(e)) from e
    finally:
        r.close()
