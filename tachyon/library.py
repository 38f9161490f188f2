import logging
import os
import re
import threading
import unicodedata
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .auth import UrlSigner
from .signing import b64url_decode, b64url_encode

logger = logging.getLogger(__name__)

IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif", ".bmp"}

_DIGITS_RE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class Comic:
    id: str
    name: str
    path: str
    page_count: int
    cover_url: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "pageCount": self.page_count,
            "cover": self.cover_url,
        }


@dataclass(frozen=True)
class Page:
    index: int
    filename: str
    relative_path: str


def _fold(text: str) -> str:
    # Case- and accent-insensitive comparison form.
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c)).casefold()


def natural_key(name: str) -> tuple:
    """
    Sort key treating digit runs as numbers, so "page2" < "page10".
    The raw string is the final tie-breaker, which keeps the order total.
    """
    parts = []
    for i, chunk in enumerate(_DIGITS_RE.split(name)):
        # re.split with a capture group alternates text, digits, text, ...
        parts.append(int(chunk) if i % 2 else _fold(chunk))
    return (tuple(parts), name)


def encode_id(folder_name: str) -> str:
    return b64url_encode(folder_name.encode("utf-8"))


def decode_id(comic_id: str) -> str | None:
    try:
        name = b64url_decode(comic_id).decode("utf-8")
    except ValueError:
        return None
    # Only the canonical encoding addresses a folder.
    if encode_id(name) != comic_id:
        return None
    return name


def is_safe_folder_name(name: str) -> bool:
    if not name or name in {".", ".."}:
        return False
    return not any(sep in name for sep in ("/", "\\", "\x00"))


def resolve_comic_dir(comics_root: Path, comic_id: str) -> Path | None:
    """Map an identifier to a direct child folder of comics_root, or None."""
    name = decode_id(comic_id)
    if name is None or not is_safe_folder_name(name):
        return None
    folder = comics_root / name
    if folder.parent != comics_root:
        return None
    return folder


def is_image_name(name: str) -> bool:
    return Path(name).suffix.lower() in IMAGE_EXTS


def _walk_images(base: Path, relative: PurePosixPath | None = None) -> list[str]:
    current = base / relative if relative else base
    found: list[str] = []
    try:
        with os.scandir(current) as it:
            entries = list(it)
    except OSError as exc:
        if relative is None:
            raise
        logger.debug("Skipping unreadable directory %s: %s", current, exc)
        return found

    for entry in entries:
        child = relative / entry.name if relative else PurePosixPath(entry.name)
        try:
            if entry.is_dir(follow_symlinks=False):
                found.extend(_walk_images(base, child))
            elif entry.is_file(follow_symlinks=False) and is_image_name(entry.name):
                found.append(str(child))
        except OSError as exc:
            logger.debug("Skipping entry %s: %s", current / entry.name, exc)
    return found


def list_pages(folder: Path) -> list[Page]:
    """Recursively list the images of a comic folder in natural order."""
    try:
        paths = _walk_images(Path(folder))
    except OSError as exc:
        logger.warning("Failed to read comic folder %s: %s", folder, exc)
        return []
    paths.sort(key=natural_key)
    return [
        Page(index=i, filename=PurePosixPath(p).name, relative_path=p)
        for i, p in enumerate(paths)
    ]


def list_child_folders(root: Path) -> list[str]:
    """Names of the immediate subdirectories of root; raises OSError if root is unreadable."""
    names = []
    with os.scandir(root) as it:
        for entry in it:
            try:
                if entry.is_dir():
                    names.append(entry.name)
            except OSError as exc:
                logger.debug("Skipping entry %s: %s", entry.path, exc)
    return names


def page_file(folder: Path, page: Page) -> Path:
    return folder.joinpath(*PurePosixPath(page.relative_path).parts)


class ComicIndex:
    """
    In-memory catalog of the comic folders directly under comics_root.

    Mutations (full_scan, apply_add, apply_remove) are serialized by a lock.
    Readers use whatever mapping and sorted tuple are current; both are
    replaced, never modified in place, so reads do not wait on scans.
    """

    def __init__(self, comics_root: Path, urls: UrlSigner):
        self.comics_root = Path(comics_root)
        self.urls = urls
        self._lock = threading.Lock()
        self._by_id: dict[str, Comic] = {}
        self._sorted: tuple[Comic, ...] = ()

    def __len__(self) -> int:
        return len(self._sorted)

    def _scan_folder(self, folder_name: str) -> Comic | None:
        if not is_safe_folder_name(folder_name):
            return None
        folder = self.comics_root / folder_name
        pages = list_pages(folder)
        if not pages:
            return None
        comic_id = encode_id(folder_name)
        return Comic(
            id=comic_id,
            name=folder_name,
            path=folder_name,
            page_count=len(pages),
            cover_url=self.urls.cover_url(comic_id),
        )

    def _publish(self, by_id: dict[str, Comic]) -> None:
        self._sorted = tuple(sorted(by_id.values(), key=lambda c: natural_key(c.name)))
        self._by_id = by_id

    def full_scan(self) -> list[Comic]:
        # Held for the whole walk: add/remove events wait instead of being
        # overwritten by a snapshot taken before they happened.
        with self._lock:
            try:
                folder_names = list_child_folders(self.comics_root)
            except OSError as exc:
                logger.warning("Failed to read comics root %s: %s", self.comics_root, exc)
                folder_names = []

            by_id: dict[str, Comic] = {}
            for folder_name in folder_names:
                try:
                    comic = self._scan_folder(folder_name)
                except Exception:
                    logger.exception("Failed to scan comic folder %s", folder_name)
                    continue
                if comic is not None:
                    by_id[comic.id] = comic

            self._publish(by_id)
            comics = list(self._sorted)
        logger.info("Indexed %d comics under %s", len(by_id), self.comics_root)
        return comics

    def apply_add(self, folder_name: str) -> Comic | None:
        comic = self._scan_folder(folder_name)
        comic_id = encode_id(folder_name)
        with self._lock:
            by_id = dict(self._by_id)
            if comic is None:
                if by_id.pop(comic_id, None) is None:
                    return None
                logger.info("Comic folder %s has no images; dropped from index", folder_name)
            else:
                by_id[comic_id] = comic
                logger.info("Indexed comic %s (%d pages)", folder_name, comic.page_count)
            self._publish(by_id)
        return comic

    def apply_remove(self, folder_name: str) -> bool:
        comic_id = encode_id(folder_name)
        with self._lock:
            if comic_id not in self._by_id:
                return False
            by_id = dict(self._by_id)
            del by_id[comic_id]
            self._publish(by_id)
        logger.info("Comic removed: %s", folder_name)
        return True

    def get_page(self, page: int, size: int) -> tuple[list[Comic], int]:
        if page < 1 or size < 1:
            raise ValueError("page and size must be positive")
        comics = self._sorted
        start = (page - 1) * size
        return list(comics[start:start + size]), len(comics)

    def get_by_id(self, comic_id: str) -> Comic | None:
        return self._by_id.get(comic_id)
