import os
import uuid
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def utcnow():
    """Timestamp corrente, sempre con timezone UTC."""
    return datetime.now(timezone.utc)


def utc_iso(dt=None):
    return (dt or utcnow()).isoformat()


def parse_iso_datetime(value):
    """Converte una stringa ISO (come salvata nel DB) in datetime; None se vuota o non valida."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    except ValueError:
        logger.warning(f"Timestamp non valido ignorato: '{value}'")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_storage_filename(original_name):
    """Nome file univoco su disco mantenendo l'estensione originale."""
    _, ext = os.path.splitext(original_name or '')
    return f"{uuid.uuid4().hex}{ext.lower()}"


def remove_file_quietly(path):
    """Rimuove un file se esiste; gli errori vengono solo loggati."""
    if not path:
        return False
    try:
        if os.path.exists(path):
            os.remove(path)
            logger.debug(f"File rimosso: {path}")
            return True
    except OSError as e:
        logger.warning(f"Impossibile rimuovere il file {path}: {e}")
    return False
