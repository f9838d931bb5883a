import json
import logging
import sqlite3

from vetrina.api.models.video import (
    MediaMetadata, Resolution, SensitivityAnalysis, VideoRecord, VideoStatus, Visibility,
)
from vetrina.core.errors import VideoNotFoundError
from vetrina.utils import parse_iso_datetime, utc_iso

logger = logging.getLogger(__name__)

# Campi descrittivi modificabili dall'utente (update_fields)
EDITABLE_FIELDS = ('title', 'description', 'tags', 'visibility')


def _escape_like(text):
    """% e _ del testo cercato vanno presi alla lettera nel LIKE."""
    return text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class VideoStore:
    """Persistenza dei VideoRecord su SQLite.

    Una connessione breve per ogni operazione: lo store viene usato sia dalle
    richieste HTTP sia dai thread della pipeline.
    """

    def __init__(self, db_path):
        if not db_path:
            raise ValueError("db_path mancante per VideoStore.")
        self.db_path = db_path

    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    # --- Conversioni riga <-> record ---

    @staticmethod
    def _row_to_record(row):
        metadata = json.loads(row['metadata'] or '{}')
        sensitivity = json.loads(row['sensitivity'] or '{}')
        return VideoRecord(
            id=row['id'],
            owner_id=row['owner_id'],
            organization_id=row['organization_id'],
            title=row['title'],
            description=row['description'] or '',
            tags=json.loads(row['tags'] or '[]'),
            visibility=row['visibility'],
            filename=row['filename'],
            original_name=row['original_name'],
            file_path=row['file_path'],
            optimized_path=row['optimized_path'],
            file_size=row['file_size'] or 0,
            mime_type=row['mime_type'] or '',
            thumbnail=row['thumbnail'],
            duration=row['duration'] or 0,
            resolution=Resolution(width=row['width'] or 0, height=row['height'] or 0),
            metadata=MediaMetadata(**metadata),
            status=row['status'],
            processing_progress=row['processing_progress'],
            sensitivity=SensitivityAnalysis(**sensitivity),
            is_active=bool(row['is_active']),
            view_count=row['view_count'] or 0,
            last_viewed_at=parse_iso_datetime(row['last_viewed_at']),
            created_at=parse_iso_datetime(row['created_at']),
            updated_at=parse_iso_datetime(row['updated_at']),
        )

    @staticmethod
    def _pipeline_columns(record):
        """Colonne di proprietà della pipeline (mai toccate dalle modifiche descrittive)."""
        sensitivity = record.sensitivity
        return {
            'optimized_path': record.optimized_path,
            'file_size': record.file_size,
            'duration': record.duration,
            'width': record.resolution.width,
            'height': record.resolution.height,
            'metadata': record.metadata.model_dump_json(),
            'thumbnail': record.thumbnail,
            'status': record.status.value,
            'processing_progress': record.processing_progress,
            'sensitivity': sensitivity.model_dump_json(),
            'sensitivity_status': sensitivity.status.value,
            'sensitivity_result': sensitivity.result.value if sensitivity.result else None,
        }

    def _all_columns(self, record):
        columns = {
            'id': record.id,
            'owner_id': record.owner_id,
            'organization_id': record.organization_id,
            'title': record.title,
            'description': record.description,
            'tags': json.dumps(record.tags),
            'visibility': record.visibility.value,
            'filename': record.filename,
            'original_name': record.original_name,
            'file_path': record.file_path,
            'mime_type': record.mime_type,
            'is_active': record.is_active,
            'view_count': record.view_count,
            'last_viewed_at': utc_iso(record.last_viewed_at) if record.last_viewed_at else None,
            'created_at': utc_iso(record.created_at),
            'updated_at': utc_iso(record.updated_at),
        }
        columns.update(self._pipeline_columns(record))
        return columns

    def _update(self, video_id, columns, extra_where='', extra_params=()):
        assignments = ", ".join(f"{name} = ?" for name in columns)
        sql = f"UPDATE videos SET {assignments} WHERE id = ?{extra_where}"
        params = list(columns.values()) + [video_id] + list(extra_params)
        conn = None
        try:
            conn = self._connect()
            cursor = conn.cursor()
            cursor.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Errore DB aggiornando il video {video_id}: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    # --- Operazioni ---

    def create(self, record: VideoRecord) -> VideoRecord:
        columns = self._all_columns(record)
        placeholders = ", ".join("?" for _ in columns)
        conn = None
        try:
            conn = self._connect()
            conn.execute(
                f"INSERT INTO videos ({', '.join(columns)}) VALUES ({placeholders})",
                list(columns.values()),
            )
            conn.commit()
            logger.info(f"Video {record.id} registrato (owner: {record.owner_id}).")
            return record
        except sqlite3.Error as e:
            logger.error(f"Errore DB creando il video {record.id}: {e}")
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                conn.close()

    def get(self, video_id):
        conn = None
        try:
            conn = self._connect()
            row = conn.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
            return self._row_to_record(row) if row else None
        finally:
            if conn:
                conn.close()

    def get_or_raise(self, video_id) -> VideoRecord:
        record = self.get(video_id)
        if record is None:
            raise VideoNotFoundError(video_id)
        return record

    def save(self, record: VideoRecord) -> VideoRecord:
        """Sostituzione completa del record (identità e file_path esclusi)."""
        record.touch()
        columns = self._all_columns(record)
        for immutable in ('id', 'owner_id', 'organization_id', 'file_path', 'created_at'):
            columns.pop(immutable)
        if not self._update(record.id, columns):
            raise VideoNotFoundError(record.id)
        return record

    def update_fields(self, video_id, **fields) -> VideoRecord:
        """Aggiornamento atomico dei soli campi descrittivi indicati."""
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Campi non modificabili: {sorted(unknown)}")
        record = self.get_or_raise(video_id)
        for name, value in fields.items():
            setattr(record, name, value) # passa dalla validazione pydantic
        record.touch()
        columns = {
            'updated_at': utc_iso(record.updated_at),
        }
        if 'title' in fields:
            columns['title'] = record.title
        if 'description' in fields:
            columns['description'] = record.description
        if 'tags' in fields:
            columns['tags'] = json.dumps(record.tags)
        if 'visibility' in fields:
            columns['visibility'] = Visibility(record.visibility).value
        self._update(video_id, columns)
        return self.get_or_raise(video_id)

    def persist_pipeline_state(self, record: VideoRecord) -> bool:
        """Salva lo stato scritto dalla pipeline; ignorato se il video è stato archiviato nel frattempo."""
        record.touch()
        columns = self._pipeline_columns(record)
        columns['updated_at'] = utc_iso(record.updated_at)
        updated = self._update(
            record.id, columns,
            extra_where=" AND status != ?", extra_params=(VideoStatus.ARCHIVED.value,),
        )
        if not updated:
            logger.warning(f"Stato pipeline del video {record.id} non salvato: video archiviato o inesistente.")
        return bool(updated)

    def archive(self, video_id) -> VideoRecord:
        record = self.get_or_raise(video_id)
        record.archive()
        record.touch()
        self._update(video_id, {
            'is_active': False,
            'status': record.status.value,
            'updated_at': utc_iso(record.updated_at),
        })
        logger.info(f"Video {video_id} archiviato.")
        return record

    def increment_view(self, video_id):
        conn = None
        try:
            conn = self._connect()
            conn.execute(
                "UPDATE videos SET view_count = view_count + 1, last_viewed_at = ? WHERE id = ?",
                (utc_iso(), video_id),
            )
            conn.commit()
        finally:
            if conn:
                conn.close()

    def search(self, organization_id, viewer_id=None, include_private=False, status=None,
               sensitivity=None, text=None, page=1, limit=10):
        """Ricerca paginata dei video attivi di un'organizzazione.

        Senza `include_private` (non admin) restituisce i video del viewer più
        quelli con visibilità organization o public.
        Ritorna (lista_record, totale).
        """
        where = ["organization_id = ?", "is_active = TRUE"]
        params = [organization_id]
        if not include_private:
            where.append("(owner_id = ? OR visibility IN (?, ?))")
            params.extend([viewer_id, Visibility.ORGANIZATION.value, Visibility.PUBLIC.value])
        if status:
            where.append("status = ?")
            params.append(status)
        if sensitivity:
            where.append("sensitivity_result = ?")
            params.append(sensitivity)
        if text:
            like = f"%{_escape_like(text.strip().lower())}%"
            where.append(
                "(LOWER(title) LIKE ? ESCAPE '\\' OR LOWER(description) LIKE ? ESCAPE '\\' "
                "OR LOWER(tags) LIKE ? ESCAPE '\\')"
            )
            params.extend([like, like, like])
        where_sql = " AND ".join(where)
        offset = (page - 1) * limit

        conn = None
        try:
            conn = self._connect()
            total = conn.execute(f"SELECT COUNT(*) FROM videos WHERE {where_sql}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM videos WHERE {where_sql} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return [self._row_to_record(row) for row in rows], total
        finally:
            if conn:
                conn.close()

    def find_stale(self, updated_before):
        """Video attivi ancora in lavorazione non aggiornati da `updated_before`."""
        conn = None
        try:
            conn = self._connect()
            rows = conn.execute(
                "SELECT * FROM videos WHERE is_active = TRUE AND updated_at < ? "
                "AND (status IN (?, ?) OR sensitivity_status = ?)",
                (utc_iso(updated_before), VideoStatus.UPLOADING.value, VideoStatus.PROCESSING.value, 'processing'),
            ).fetchall()
            return [self._row_to_record(row) for row in rows]
        finally:
            if conn:
                conn.close()
