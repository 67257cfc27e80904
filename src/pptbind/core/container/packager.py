"""Re-serialize a container with a set of replaced parts."""

from __future__ import annotations

import io
import logging
import zipfile
from typing import Mapping

from pptbind.core.container.package import Container
from pptbind.core.errors import CorruptArchive

logger = logging.getLogger(__name__)


def _copy_info(src: zipfile.ZipInfo, *, compress_type: int | None = None) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(src.filename, date_time=src.date_time)
    info.compress_type = src.compress_type if compress_type is None else compress_type
    info.comment = src.comment
    info.create_system = src.create_system
    info.external_attr = src.external_attr
    info.internal_attr = src.internal_attr
    return info


def _as_bytes(value: bytes | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def pack(
    mutated_parts: Mapping[str, bytes | str],
    original: Container,
    *,
    compression: int = zipfile.ZIP_DEFLATED,
    compresslevel: int | None = None,
) -> bytes:
    """Write ``original`` to a new archive, replacing members found in ``mutated_parts``.

    Untouched members keep their content, compression method, timestamp and
    attributes. Mutated members are written with ``compression`` at
    ``compresslevel``. Paths that do not exist in ``original`` are appended.
    """
    buf = io.BytesIO()
    written: set[str] = set()
    with zipfile.ZipFile(buf, "w") as out:
        for src in original.infolist():
            name = src.filename
            if name in mutated_parts:
                info = _copy_info(src, compress_type=compression)
                out.writestr(info, _as_bytes(mutated_parts[name]), compresslevel=compresslevel)
            else:
                data = original.get_part(name)
                out.writestr(_copy_info(src), data if data is not None else b"")
            written.add(name)

        for name, value in mutated_parts.items():
            if name in written:
                continue
            logger.debug("Appending new part %s", name)
            info = zipfile.ZipInfo(name)
            info.compress_type = compression
            out.writestr(info, _as_bytes(value), compresslevel=compresslevel)

    return buf.getvalue()


def verify_package(data: bytes) -> int:
    """Reopen packed bytes and check every member; returns the member count."""
    with Container.open(data) as container:
        names = container.names()
        for name in names:
            container.get_part(name)
    if not names:
        raise CorruptArchive("Packed document has no parts")
    return len(names)
