import os
import sqlite3
import logging

logger = logging.getLogger(__name__)


def ensure_media_directories(config):
    """Crea (se mancano) le cartelle per upload, file ottimizzati, miniature e frame temporanei."""
    for key in ('UPLOAD_FOLDER_PATH', 'OPTIMIZED_FOLDER_PATH', 'THUMBNAILS_FOLDER_PATH', 'SCRATCH_FOLDER_PATH'):
        folder = config.get(key)
        if not folder:
            raise ValueError(f"{key} non trovato nella configurazione.")
        if not os.path.exists(folder):
            os.makedirs(folder, exist_ok=True)
            logger.info(f"Directory '{folder}' creata ({key}).")


def init_db(config):
    """Inizializza il database SQLite usando il path dalla config."""
    db_path = config.get('DATABASE_FILE')
    if not db_path:
        raise ValueError("DATABASE_FILE non trovato nella configurazione.")

    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        try:
            os.makedirs(db_dir)
            logger.info(f"Directory database '{db_dir}' creata.")
        except OSError as e:
            logger.error(f"Errore creando la directory {db_dir}: {e}")
            raise

    conn = None
    try:
        conn = sqlite3.connect(db_path)
        cursor = conn.cursor()

        # --- Tabella users ---
        # Gli account sono gestiti altrove: qui servono solo identità, organizzazione e ruolo
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY, email TEXT NOT NULL UNIQUE, name TEXT,
                organization_id TEXT NOT NULL, role TEXT NOT NULL DEFAULT 'viewer',
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )''')

        # --- Tabella videos ---
        # tags, metadata e sensitivity sono colonne JSON; sensitivity_status e
        # sensitivity_result sono copie usate dai filtri di ricerca
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS videos (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL, organization_id TEXT NOT NULL,
                title TEXT NOT NULL, description TEXT DEFAULT '',
                tags TEXT DEFAULT '[]', visibility TEXT NOT NULL DEFAULT 'private',
                filename TEXT NOT NULL, original_name TEXT NOT NULL,
                file_path TEXT NOT NULL, optimized_path TEXT,
                file_size INTEGER DEFAULT 0, mime_type TEXT, thumbnail TEXT,
                duration REAL DEFAULT 0, width INTEGER DEFAULT 0, height INTEGER DEFAULT 0,
                metadata TEXT DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'uploading',
                processing_progress INTEGER NOT NULL DEFAULT 0,
                sensitivity TEXT DEFAULT '{}',
                sensitivity_status TEXT NOT NULL DEFAULT 'pending',
                sensitivity_result TEXT,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                view_count INTEGER NOT NULL DEFAULT 0, last_viewed_at TEXT,
                created_at TEXT NOT NULL, updated_at TEXT NOT NULL
            )''')
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_videos_org_status ON videos (organization_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_videos_owner ON videos (owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_videos_sensitivity ON videos (sensitivity_status)")

        conn.commit()
        logger.info(f"Database inizializzato/verificato in: {db_path}")
    except sqlite3.Error as e:
        logger.error(f"Errore durante l'inizializzazione del database {db_path}: {e}")
        if conn:
            conn.rollback()
        raise
    finally:
        if conn:
            conn.close()
