import logging
import os

from flask import Response

from vetrina.core.errors import RangeNotSatisfiableError

logger = logging.getLogger(__name__)

EXPOSED_STREAM_HEADERS = ['Content-Range', 'Content-Length', 'Accept-Ranges']


def parse_range_header(header, file_size):
    """Interpreta 'bytes=start-end' e ritorna (start, end) inclusivi, oppure None senza header.

    `end` mancante vale file_size - 1 e viene comunque limitato alla fine del
    file. Solo il primo intervallo viene considerato; forme senza start
    ('bytes=-500') o fuori dal file sollevano RangeNotSatisfiableError.
    """
    if header is None or not header.strip():
        return None
    header = header.strip()
    if not header.startswith('bytes='):
        raise RangeNotSatisfiableError(file_size, f"Unità di range non supportata: '{header}'.")
    first_range = header[len('bytes='):].split(',')[0].strip()
    start_s, sep, end_s = first_range.partition('-')
    if not sep or not start_s.strip():
        raise RangeNotSatisfiableError(file_size, f"Range senza inizio: '{header}'.")
    try:
        start = int(start_s)
        end = int(end_s) if end_s.strip() else file_size - 1
    except ValueError:
        raise RangeNotSatisfiableError(file_size, f"Range non numerico: '{header}'.")
    end = min(end, file_size - 1)
    if start < 0 or start >= file_size or start > end:
        raise RangeNotSatisfiableError(file_size, f"Range {start}-{end} fuori dal file ({file_size} bytes).")
    return start, end


def iter_file_range(path, start, end, chunk_size):
    """Legge [start, end] a blocchi di chunk_size: il file non viene mai caricato tutto in memoria."""
    with open(path, 'rb') as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(chunk_size, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


def build_stream_response(path, range_header, chunk_size, mimetype='video/mp4'):
    """206 con Content-Range se c'è un Range valido, altrimenti 200 con il file intero."""
    file_size = os.path.getsize(path)
    byte_range = parse_range_header(range_header, file_size)

    if byte_range is None:
        headers = {
            'Content-Length': str(file_size),
            'Accept-Ranges': 'bytes',
        }
        body = iter_file_range(path, 0, file_size - 1, chunk_size) if file_size else iter(())
        return Response(body, status=200, mimetype=mimetype, headers=headers, direct_passthrough=True)

    start, end = byte_range
    headers = {
        'Content-Range': f"bytes {start}-{end}/{file_size}",
        'Accept-Ranges': 'bytes',
        'Content-Length': str(end - start + 1),
    }
    logger.debug(f"Streaming {os.path.basename(path)}: bytes {start}-{end}/{file_size}")
    return Response(
        iter_file_range(path, start, end, chunk_size),
        status=206, mimetype=mimetype, headers=headers, direct_passthrough=True,
    )
