"""
Bottle application receiving chat webhooks for chbot.

Routes:
- GET /health   - Liveness check
- POST /webhook - Outgoing-webhook call from the chat platform

The webhook payload follows the Zulip outgoing webhook format: the message
text is in `data` (or `message.content`) and the shared secret in `token`.
The reply is returned as `{"content": ...}`.
"""

import hmac
import json
import logging
import re
import traceback
from typing import Any, Dict, Optional

from bottle import Bottle, HTTPResponse, abort, request, response

from .bridge import QueryBridge
from .config import AppConfig

logger = logging.getLogger(__name__)

# Leading "@**chbot**" mention inserted by the chat client
MENTION_PATTERN = re.compile(r"^@_?\*\*[^*]+\*\*\s*")
CODE_FENCE_PATTERN = re.compile(r"^```[A-Za-z0-9_-]*[ \t]*\n?(.*?)\n?```$", re.DOTALL)


def extract_query_text(payload: Dict[str, Any], command: str = "query") -> Optional[str]:
    """
    Pull the SQL out of a webhook payload.

    Drops the bot mention and command word, and unwraps code fences.

    Returns:
        The query text, or None if the message holds no query.
    """
    text = payload.get("data")
    if text is None and isinstance(payload.get("message"), dict):
        text = payload["message"].get("content")
    if not isinstance(text, str):
        return None

    text = MENTION_PATTERN.sub("", text.strip())

    parts = text.split(None, 1)
    if parts and parts[0].lstrip("/!").lower() == command.lower():
        text = parts[1] if len(parts) > 1 else ""
    text = text.strip()

    fence = CODE_FENCE_PATTERN.match(text)
    if fence:
        text = fence.group(1).strip()
    elif len(text) > 2 and text[0] == text[-1] == "`" and "`" not in text[1:-1]:
        text = text[1:-1].strip()

    return text or None


def _message_source(payload: Dict[str, Any]) -> str:
    message = payload.get("message")
    if isinstance(message, dict):
        return str(message.get("sender_email") or message.get("sender_full_name") or "webhook")
    return "webhook"


def create_app(config: AppConfig, bridge: QueryBridge) -> Bottle:
    """Create the webhook application.

    Args:
        config: Application configuration (the webhook token is read from it)
        bridge: Query bridge answering messages
    """
    app = Bottle()
    token = config.bot.token
    command = config.bot.command

    @app.route('/health')
    def health():
        return {"status": "ok"}

    @app.route('/webhook', method='POST')
    def webhook():
        """
        Answer one chat message.

        Returns:
            {"content": reply} on success.
            400 if the body is not a JSON object.
            403 if the token does not match.
        """
        try:
            try:
                payload = request.json
            except ValueError:
                payload = None
            if not isinstance(payload, dict):
                logger.warning("Webhook rejected: body is not a JSON object")
                abort(400, "Expected a JSON object")

            if token and not hmac.compare_digest(str(payload.get("token", "")), token):
                logger.warning("Webhook rejected: bad token")
                abort(403, "Invalid token")

            query_text = extract_query_text(payload, command)
            reply = bridge.answer(query_text, source=_message_source(payload))
            return {"content": reply}

        except HTTPResponse:
            raise  # Re-raise abort responses
        except Exception as e:
            logger.error(f"Error answering webhook: {str(e)}")
            logger.error(traceback.format_exc())
            return {"content": "Internal error while running the query"}

    def _json_error(err, default: str) -> str:
        response.content_type = 'application/json'
        message = str(err.body) if err.body else default
        return json.dumps({"error": message})

    @app.error(400)
    def error400(err):
        return _json_error(err, "Bad request")

    @app.error(403)
    def error403(err):
        return _json_error(err, "Forbidden")

    @app.error(404)
    def error404(err):
        return _json_error(err, "Not found")

    @app.error(500)
    def error500(err):
        logger.error(f"500 error: {err}")
        return _json_error(err, "Internal server error")

    return app
