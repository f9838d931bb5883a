import json
import logging

from flask import Blueprint, Response, current_app, stream_with_context
from flask_login import current_user, login_required

logger = logging.getLogger(__name__)
events_bp = Blueprint('events', __name__)


# Funzione Helper SSE
def format_sse_event(data_dict: dict, event_type: str = 'status') -> str:
    json_data = json.dumps(data_dict)
    return f"event: {event_type}\ndata: {json_data}\n\n"


@events_bp.route('/', methods=['GET'])
@login_required
def stream_events():
    """Eventi di avanzamento dell'utente autenticato (Server-Sent Events).

    Ogni connessione è un listener del canale; i messaggi persi durante una
    disconnessione non vengono recuperati.
    """
    channel = current_app.config['PROGRESS_CHANNEL']
    keepalive_seconds = current_app.config.get('SSE_KEEPALIVE_SECONDS', 15)
    recipient_id = str(current_user.id)
    subscription = channel.subscribe(recipient_id)
    logger.info(f"SSE: listener collegato per l'utente {recipient_id}")

    def generate():
        try:
            yield format_sse_event({'recipient_id': recipient_id}, 'connected')
            while True:
                item = subscription.get(timeout=keepalive_seconds)
                if item is None:
                    yield ": keepalive\n\n"
                    continue
                event_name, payload = item
                yield format_sse_event(payload, event_name)
        finally:
            channel.unsubscribe(subscription)
            logger.info(f"SSE: listener scollegato per l'utente {recipient_id}")

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
