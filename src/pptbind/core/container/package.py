"""Read-only view over a presentation archive held in memory."""

from __future__ import annotations

import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass
from typing import Iterator

from pptbind.core.errors import CorruptArchive

logger = logging.getLogger(__name__)

PRESENTATION_PART = "ppt/presentation.xml"
CONTENT_TYPES_PART = "[Content_Types].xml"

MASTER_PART = "ppt/slideMasters/slideMaster{n}.xml"
LAYOUT_PART = "ppt/slideLayouts/slideLayout{n}.xml"
SLIDE_PART = "ppt/slides/slide{n}.xml"
NOTES_PART = "ppt/notesSlides/notesSlide{n}.xml"

# Parts whose text may carry data-binding tokens.
TEMPLATED_PART_RE = re.compile(
    r"^ppt/(?:slides/slide|slideLayouts/slideLayout|slideMasters/slideMaster|notesSlides/notesSlide)\d+\.xml$"
)

PPTX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"


@dataclass(frozen=True)
class ContainerPart:
    """A named member of the archive."""

    path: str
    data: bytes

    @property
    def text(self) -> str:
        return self.data.decode("utf-8")


class Container:
    """Random access to archive members by path.

    Only the central directory is read when the container is opened; member
    data is decompressed on demand.
    """

    def __init__(self, zf: zipfile.ZipFile, size: int) -> None:
        self._zf = zf
        self.size = size
        self._names = [i.filename for i in zf.infolist() if not i.is_dir()]
        self._name_set = set(self._names)

    @classmethod
    def open(cls, data: bytes) -> "Container":
        if not data:
            raise CorruptArchive("Template file is empty")
        try:
            zf = zipfile.ZipFile(io.BytesIO(data), "r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
            raise CorruptArchive(f"Template is not a valid zip archive: {e}") from e
        container = cls(zf, len(data))
        logger.debug("Opened container with %d parts (%d bytes)", len(container._names), len(data))
        return container

    def __enter__(self) -> "Container":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._zf.close()

    def names(self) -> list[str]:
        return list(self._names)

    def infolist(self) -> list[zipfile.ZipInfo]:
        return [i for i in self._zf.infolist() if not i.is_dir()]

    def has_part(self, path: str) -> bool:
        return path in self._name_set

    def get_part(self, path: str) -> bytes | None:
        if path not in self._name_set:
            return None
        try:
            return self._zf.read(path)
        except (zipfile.BadZipFile, zlib.error, EOFError) as e:
            raise CorruptArchive(f"Cannot read part {path}: {e}") from e

    def get_text(self, path: str) -> str | None:
        data = self.get_part(path)
        if data is None:
            return None
        return data.decode("utf-8")

    def part(self, path: str) -> ContainerPart | None:
        data = self.get_part(path)
        if data is None:
            return None
        return ContainerPart(path=path, data=data)

    def numbered_parts(self, template: str, ceiling: int) -> Iterator[tuple[int, str]]:
        """Yield ``(n, path)`` for ``template.format(n=1..)`` until a gap or ``ceiling``."""
        for n in range(1, ceiling + 1):
            path = template.format(n=n)
            if path not in self._name_set:
                return
            yield n, path

    def templated_parts(self) -> list[str]:
        return [n for n in self._names if TEMPLATED_PART_RE.match(n)]


def open_container(data: bytes) -> Container:
    return Container.open(data)


def get_part(container: Container, path: str) -> bytes | None:
    return container.get_part(path)
