import logging
import queue
import threading
from collections import defaultdict
from typing import Dict, Set

from vetrina.utils import utc_iso

logger = logging.getLogger(__name__)

# Nomi degli eventi pubblicati verso i client
EVENT_UPLOAD_COMPLETE = 'video-upload-complete'
EVENT_PROCESSING_PROGRESS = 'video-processing-progress'
EVENT_PROCESSING_COMPLETE = 'video-processing-complete'
EVENT_PROCESSING_ERROR = 'video-processing-error'
EVENT_SENSITIVITY_PROGRESS = 'sensitivity-analysis-progress'
EVENT_SENSITIVITY_COMPLETE = 'sensitivity-analysis-complete'
EVENT_SENSITIVITY_ERROR = 'sensitivity-analysis-error'


class Subscription:
    """Coda di un singolo listener per un destinatario."""

    def __init__(self, recipient_id, maxsize):
        self.recipient_id = recipient_id
        self.queue = queue.Queue(maxsize=maxsize)

    def get(self, timeout=None):
        """Prossimo evento (event_name, payload) o None allo scadere del timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


class ProgressChannel:
    """Canale publish/subscribe per destinatario, in memoria.

    Consegna best-effort, al massimo una volta: nessuna persistenza, nessun
    replay; se la coda di un listener è piena l'evento viene scartato per quel
    listener e chi pubblica non si blocca mai.
    """

    def __init__(self, max_queue_size=100):
        self._subs: Dict[str, Set[Subscription]] = defaultdict(set)
        self._lock = threading.RLock()
        self._max_queue_size = max_queue_size

    def subscribe(self, recipient_id) -> Subscription:
        subscription = Subscription(str(recipient_id), self._max_queue_size)
        with self._lock:
            self._subs[subscription.recipient_id].add(subscription)
        logger.debug(f"Nuovo listener per {recipient_id}.")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subs.get(subscription.recipient_id)
            if subs and subscription in subs:
                subs.remove(subscription)
                if not subs:
                    self._subs.pop(subscription.recipient_id, None)

    def listener_count(self, recipient_id) -> int:
        with self._lock:
            return len(self._subs.get(str(recipient_id), ()))

    def publish(self, recipient_id, event_name, payload) -> int:
        """Invia l'evento ai listener del destinatario; ritorna quanti lo hanno ricevuto."""
        event_payload = dict(payload)
        event_payload.setdefault('timestamp', utc_iso())
        with self._lock:
            listeners = list(self._subs.get(str(recipient_id), ()))
        delivered = 0
        for subscription in listeners:
            try:
                subscription.queue.put_nowait((event_name, event_payload))
                delivered += 1
            except queue.Full:
                logger.warning(f"Coda piena per {recipient_id}: evento '{event_name}' scartato.")
        return delivered
