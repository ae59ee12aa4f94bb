from __future__ import annotations

import zipfile
from io import BytesIO

from manifest_billing.core.errors import ValidationError

MAX_ARCHIVE_FILES = 100
MAX_TOTAL_UNCOMPRESSED = 50 * 1024 * 1024  # 50MB


def sanitize_filename(name: str) -> str:
    # Strip any path components and normalize whitespace.
    name = name.replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())


def pack(files: list[tuple[str, bytes]]) -> bytes:
    buf = BytesIO()
    with zipfile.ZipFile(buf, mode="w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, body in files:
            zf.writestr(name, body)
    return buf.getvalue()


def unpack(body: bytes) -> list[tuple[str, bytes]]:
    """Flatten a zip into (filename, bytes) pairs, skipping directories and OS junk."""
    out: list[tuple[str, bytes]] = []
    total = 0
    try:
        zf = zipfile.ZipFile(BytesIO(body))
    except zipfile.BadZipFile as e:
        raise ValidationError("Invalid ZIP file") from e

    with zf:
        infos = [i for i in zf.infolist() if not i.is_dir()]
        if len(infos) > MAX_ARCHIVE_FILES:
            raise ValidationError(f"ZIP contains too many files (max {MAX_ARCHIVE_FILES}).")

        for info in infos:
            filename = sanitize_filename(info.filename)
            if not filename or filename.startswith(".") or "__MACOSX" in info.filename:
                continue
            total += int(info.file_size or 0)
            if total > MAX_TOTAL_UNCOMPRESSED:
                raise ValidationError("ZIP is too large when uncompressed.")
            out.append((filename, zf.read(info)))
    return out
