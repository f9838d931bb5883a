from flask_login import UserMixin

ROLE_VIEWER = 'viewer'
ROLE_EDITOR = 'editor'
ROLE_ADMIN = 'admin'


class Principal(UserMixin):
    """Utente autenticato per Flask-Login (gli account sono gestiti da un altro servizio)."""

    def __init__(self, id, email, organization_id, role=ROLE_VIEWER, name=None):
        self.id = id # Stringa univoca, coincide con il 'sub' del token
        self.email = email
        self.organization_id = organization_id
        self.role = role
        self.name = name # Opzionale: nome visualizzato

    @property
    def is_admin(self):
        return self.role == ROLE_ADMIN

    @property
    def can_edit_content(self):
        return self.role in (ROLE_EDITOR, ROLE_ADMIN)

    def get_id(self):
        return str(self.id)

    def __repr__(self):
        return f'<Principal {self.email} (ID: {self.id}, ruolo: {self.role})>'
