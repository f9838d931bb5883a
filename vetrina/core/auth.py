import logging
import sqlite3

import jwt
from flask import current_app, g

from vetrina.api.models.video import VideoRecord, Visibility
from vetrina.models.user import Principal

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"


def extract_bearer_token(req):
    """Token dall'header 'Authorization: Bearer ...' o, in mancanza, dal parametro ?token=.

    Il parametro in query serve ai player video, che non possono impostare header.
    """
    auth_header = req.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    return req.args.get('token') or None


def decode_access_token(token, secret_key):
    """Ritorna il 'sub' del token; solleva jwt.InvalidTokenError (o ExpiredSignatureError)."""
    payload = jwt.decode(token, secret_key, algorithms=[JWT_ALGORITHM])
    user_id = payload.get('sub')
    if not user_id:
        raise jwt.InvalidTokenError("Token JWT non contiene user_id ('sub').")
    return str(user_id)


def load_principal(db_path, user_id):
    conn = None
    try:
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT id, email, name, organization_id, role FROM users WHERE id = ? AND is_active = TRUE",
            (user_id,),
        ).fetchone()
    except sqlite3.Error as e:
        logger.error(f"Errore DB caricando l'utente {user_id}: {e}")
        return None
    finally:
        if conn:
            conn.close()
    if not row:
        return None
    return Principal(
        id=row['id'], email=row['email'], organization_id=row['organization_id'],
        role=row['role'], name=row['name'],
    )


def load_principal_from_request(req):
    """request_loader di Flask-Login: autentica ogni richiesta tramite JWT.

    In caso di rifiuto lascia in g.auth_error_code il motivo, usato
    dall'unauthorized handler.
    """
    token = extract_bearer_token(req)
    if not token:
        g.auth_error_code = 'TOKEN_REQUIRED'
        return None
    try:
        user_id = decode_access_token(token, current_app.config['SECRET_KEY'])
    except jwt.ExpiredSignatureError:
        logger.warning("Tentativo di accesso con token JWT scaduto.")
        g.auth_error_code = 'TOKEN_EXPIRED'
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Tentativo di accesso con token JWT non valido: {e}")
        g.auth_error_code = 'INVALID_TOKEN'
        return None

    principal = load_principal(current_app.config['DATABASE_FILE'], user_id)
    if principal is None:
        logger.warning(f"Token valido ma utente {user_id} inesistente o disattivato.")
        g.auth_error_code = 'USER_NOT_FOUND'
    return principal


def can_view(principal, record: VideoRecord) -> bool:
    if record.visibility == Visibility.PUBLIC:
        return True
    if record.owner_id == str(principal.id):
        return True
    same_org = record.organization_id == str(principal.organization_id)
    if record.visibility == Visibility.ORGANIZATION and same_org:
        return True
    return principal.is_admin and same_org


def can_edit(principal, record: VideoRecord) -> bool:
    """Modifica e archiviazione: ruolo editor/admin; i non admin solo sui propri video."""
    if not principal.can_edit_content:
        return False
    if principal.is_admin:
        return record.organization_id == str(principal.organization_id)
    return record.owner_id == str(principal.id)
