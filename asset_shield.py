import hashlib
import html
import json
import logging
import mimetypes
import os
import re
import tempfile
import threading
import tomllib
from collections import Counter
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import (
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)
from urllib.parse import parse_qsl, unquote, urlencode, urljoin, urlparse, urlunparse

import yaml
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# -------------------- Config --------------------

IMAGE_EXTS = {
    "png",
    "jpg",
    "jpeg",
    "gif",
    "webp",
    "svg",
    "ico",
    "bmp",
    "avif",
}
STATIC_EXTS = IMAGE_EXTS | {
    "css",
    "js",
    "mjs",
    "woff",
    "woff2",
    "ttf",
    "otf",
    "eot",
}
ASSET_LINK_RELS = {
    "stylesheet",
    "icon",
    "apple-touch-icon",
    "preload",
    "modulepreload",
}
NON_FETCH_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")

TAG_NAME_RE = re.compile(r"<([A-Za-z][^\s/>]*)")
# unquoted values run to whitespace or ">", as in html.parser
ATTR_RE = re.compile(
    r"""[\s/]*([^\s"'<>/=]+)"""
    r"""(?:\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]+)))?"""
)
SCRIPT_TYPE_RE = re.compile(r"""\stype=(["'])text/javascript\1""", re.IGNORECASE)
ID_ATTR_RE = re.compile(r"""\sid=(["'])[^"']*\1""", re.IGNORECASE)
URL_ATTR_RE = re.compile(
    r"""(?P<pre>\s(?:src|href)=(?P<q>["']))(?P<u>[^"']*)(?P=q)""", re.IGNORECASE
)

MAP_VERSION = 1


@dataclass
class Settings:
    site_url: str = ""
    document_root: str = ""
    cache_dir: Optional[str] = None  # default: <document_root>/assets
    cache_url: Optional[str] = None  # default: derived from site_url

    map_name: str = "map.json"
    policy_name: str = ".htaccess"
    hash_length: int = 16

    extensions: Set[str] = field(default_factory=lambda: set(STATIC_EXTS))
    image_extensions: Set[str] = field(default_factory=lambda: set(IMAGE_EXTS))
    link_rels: Set[str] = field(default_factory=lambda: set(ASSET_LINK_RELS))
    version_params: Set[str] = field(default_factory=lambda: {"ver"})

    cache_control: str = "public, max-age=31536000, immutable"

    def validate(self) -> None:
        if not self.site_url:
            raise ValueError("site_url is required")
        if urlparse(self.site_url).scheme not in {"http", "https"}:
            raise ValueError(f"site_url must be http(s): {self.site_url}")
        if not self.document_root:
            raise ValueError("document_root is required")
        if not 8 <= self.hash_length <= 32:
            raise ValueError("hash_length must be between 8 and 32")

    @property
    def cache_root(self) -> Path:
        if self.cache_dir:
            return Path(self.cache_dir)
        return Path(self.document_root) / "assets"

    @property
    def site_host(self) -> str:
        return (urlparse(self.site_url).hostname or "").lower()


def load_config_file(path: str) -> Dict[str, object]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


SET_FIELDS = {"extensions", "image_extensions", "link_rels", "version_params"}


def settings_from_mapping(data: Mapping[str, object]) -> Settings:
    known = {f.name for f in fields(Settings)}
    kwargs: Dict[str, object] = {}
    for k, v in data.items():
        if k not in known:
            logger.warning("unknown config key ignored: %s", k)
            continue
        if k in SET_FIELDS:
            if isinstance(v, str):
                v = [v]
            if not isinstance(v, (list, tuple, set)):
                raise ValueError(f"{k} must be a string or a list of strings")
            v = {str(x).strip().lower().lstrip(".") for x in v}
        kwargs[k] = v
    settings = Settings(**kwargs)
    settings.validate()
    return settings


def load_settings(path: str) -> Settings:
    data = load_config_file(path)
    # allow the settings to live under an [asset_shield] table
    section = data.get("asset_shield")
    if isinstance(section, dict):
        data = section
    return settings_from_mapping(data)


# -------------------- Errors --------------------


class AssetCacheError(Exception):
    """Base class for failures inside the caching path."""


class SourceUnreadable(AssetCacheError):
    pass


class WriteFailure(AssetCacheError):
    pass


class StaleEntry(AssetCacheError):
    pass


# -------------------- Utils --------------------


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.lower().startswith(NON_FETCH_PREFIXES):
        return False
    return True


def ensure_parent_dir(p: Path) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write ``data`` to a unique temp file next to ``path``, then move it into place.

    Concurrent writers of the same target each use their own temp file and the
    last ``os.replace`` wins.
    """
    ensure_parent_dir(path)
    fd, tmp = tempfile.mkstemp(prefix=path.name + ".", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def ext_for_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    ct = mime_type.split(";")[0].strip().lower()
    if ct in ("application/javascript", "text/javascript"):
        return "js"
    if ct == "image/svg+xml":
        return "svg"
    if ct == "image/jpeg":
        return "jpg"
    if ct == "font/woff2":
        return "woff2"
    if ct == "font/woff":
        return "woff"
    guessed = mimetypes.guess_extension(ct)
    return guessed.lstrip(".") if guessed else None


def url_suffix(url: str) -> str:
    name = os.path.basename(urlparse(url).path.rstrip("/"))
    return os.path.splitext(name)[1].lstrip(".").lower()


def strip_version_params(url: str, params: Set[str]) -> str:
    p = urlparse(url)
    if not p.query:
        return url
    drop = {k.lower() for k in params}
    qs = parse_qsl(p.query, keep_blank_values=True)
    keep = [(k, v) for k, v in qs if k.lower() not in drop]
    if len(keep) == len(qs):
        return url
    return urlunparse(
        (p.scheme, p.netloc, p.path, p.params, urlencode(keep, doseq=True), p.fragment)
    )


# -------------------- Path resolution --------------------


class PathResolver:
    """Maps site URLs onto files below the document root."""

    def __init__(self, settings: Settings):
        self.s = settings
        self.host = settings.site_host
        self.base_path = urlparse(settings.site_url).path.rstrip("/")
        self.root = Path(settings.document_root).resolve()

    def is_local(self, url: Optional[str]) -> bool:
        if not can_fetch_url(url):
            return False
        try:
            p = urlparse(url.strip())
        except ValueError:
            return False
        if p.scheme and p.scheme.lower() not in {"http", "https"}:
            return False
        if not p.netloc:
            return True
        return (p.hostname or "").lower() == self.host

    def relative_path(self, url: str) -> Optional[str]:
        absu = urljoin(self.s.site_url.rstrip("/") + "/", url.strip())
        path = unquote(urlparse(absu).path)
        if self.base_path:
            if path == self.base_path:
                return None
            if not path.startswith(self.base_path + "/"):
                return None
            path = path[len(self.base_path) :]
        rel = path.lstrip("/")
        return rel or None

    def resolve(self, url: Optional[str]) -> Optional[Path]:
        if not self.is_local(url):
            return None
        try:
            rel = self.relative_path(url)
            if rel is None:
                return None
            real = (self.root / rel).resolve(strict=True)
        except (OSError, RuntimeError, ValueError):
            return None
        if not real.is_relative_to(self.root):
            logger.debug("path escapes document root: %s", url)
            return None
        if not real.is_file():
            return None
        return real


# -------------------- Identity --------------------


def identity_key(path: Union[str, Path], mtime_ns: Optional[int] = None) -> str:
    p = Path(path)
    if mtime_ns is None:
        mtime_ns = p.stat().st_mtime_ns
    return hashlib.md5(f"{p}:{mtime_ns}".encode("utf-8")).hexdigest()


# -------------------- Request context --------------------


class RuntimeMemo:
    def __init__(self) -> None:
        self._m: Dict[Tuple[str, Optional[str]], str] = {}

    def lookup(self, url: str, kind: Optional[str] = None) -> Optional[str]:
        return self._m.get((url, kind))

    def store(self, url: str, cached_url: str, kind: Optional[str] = None) -> None:
        self._m[(url, kind)] = cached_url

    def __len__(self) -> int:
        return len(self._m)


@dataclass
class RequestContext:
    """State scoped to one request/response cycle."""

    memo: RuntimeMemo = field(default_factory=RuntimeMemo)
    saving: bool = False
    save_pending: bool = False
    stats: Counter = field(default_factory=Counter)


# -------------------- Cache store --------------------


@dataclass(frozen=True)
class CacheEntry:
    key: str
    cache_path: str


class CacheStore:
    def __init__(self, settings: Settings, resolver: Optional[PathResolver] = None):
        self.s = settings
        self.resolver = resolver or PathResolver(settings)
        self.root = settings.cache_root.resolve()
        self.map_path = self.root / settings.map_name
        self.base_url = self._public_base_url()
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.load_map()

    def _public_base_url(self) -> str:
        if self.s.cache_url:
            return self.s.cache_url.rstrip("/")
        doc_root = Path(self.s.document_root).resolve()
        if not self.root.is_relative_to(doc_root):
            raise ValueError(
                "cache_url is required when cache_dir is outside document_root"
            )
        rel = self.root.relative_to(doc_root).as_posix()
        return f"{self.s.site_url.rstrip('/')}/{rel}"

    # map persistence

    def load_map(self) -> None:
        entries: Dict[str, CacheEntry] = {}
        if self.map_path.exists():
            try:
                data = json.loads(self.map_path.read_text(encoding="utf-8"))
                for k, v in (data.get("entries") or {}).items():
                    entries[str(k)] = CacheEntry(str(k), str(v))
            except Exception as e:
                logger.warning("failed to load cache map %s: %s", self.map_path, e)
                entries = {}
        with self._lock:
            self._entries = entries

    def save_map(self, ctx: RequestContext) -> None:
        if ctx.saving:
            ctx.save_pending = True
            return
        ctx.saving = True
        try:
            while True:
                ctx.save_pending = False
                self._write_map()
                if not ctx.save_pending:
                    break
        finally:
            ctx.saving = False
            ctx.save_pending = False

    def _write_map(self) -> None:
        with self._lock:
            snapshot = {k: e.cache_path for k, e in self._entries.items()}
        payload = {"version": MAP_VERSION, "entries": snapshot}
        try:
            atomic_write_bytes(
                self.map_path,
                json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"),
            )
        except OSError as e:
            raise WriteFailure(f"cache map {self.map_path}: {e}") from e

    def entries(self) -> Dict[str, CacheEntry]:
        with self._lock:
            return dict(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # layout

    def bucket_for(self, kind: str) -> str:
        return "img" if kind in self.s.image_extensions else kind

    def cache_path_for(self, key: str, kind: str) -> str:
        return f"{self.bucket_for(kind)}/{key[: self.s.hash_length]}.{kind}"

    def public_url(self, cache_path: str) -> str:
        return f"{self.base_url}/{cache_path}"

    def kind_for(self, path: Path, hint: Optional[str]) -> Optional[str]:
        kind = path.suffix.lstrip(".").lower() or (hint or "").lower()
        if not kind or kind not in self.s.extensions:
            return None
        return kind

    # lookups

    def get_cached_url(
        self,
        source_url: Optional[str],
        kind: Optional[str] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[str]:
        ctx = ctx or RequestContext()
        try:
            return self._get_cached_url(source_url, kind, ctx)
        except AssetCacheError as e:
            ctx.stats["skipped"] += 1
            logger.warning("asset not cached %s: %s", source_url, e)
        except Exception:
            ctx.stats["skipped"] += 1
            logger.exception("unexpected failure caching %s", source_url)
        return None

    def _get_cached_url(
        self, source_url: Optional[str], hint: Optional[str], ctx: RequestContext
    ) -> Optional[str]:
        path = self.resolver.resolve(source_url)
        if path is None:
            return None
        if path.is_relative_to(self.root):
            return None
        kind = self.kind_for(path, hint)
        if kind is None:
            logger.debug("unsupported asset kind: %s", source_url)
            return None
        try:
            key = identity_key(path)
        except OSError as e:
            raise SourceUnreadable(str(e)) from e

        with self._lock:
            entry = self._entries.get(key)
        if entry is not None:
            try:
                self._check_entry(entry)
                ctx.stats["hits"] += 1
                return self.public_url(entry.cache_path)
            except StaleEntry as e:
                ctx.stats["repairs"] += 1
                logger.info("regenerating stale cache entry: %s", e)

        ctx.stats["misses"] += 1
        content = self._read_source(path)
        cache_path = entry.cache_path if entry else self.cache_path_for(key, kind)
        target = self.root / cache_path
        try:
            atomic_write_bytes(target, content)
        except OSError as e:
            raise WriteFailure(f"{target}: {e}") from e
        ctx.stats["writes"] += 1
        with self._lock:
            self._entries.setdefault(key, CacheEntry(key, cache_path))
        self.save_map(ctx)
        logger.info("cached asset: %s -> %s", path, cache_path)
        return self.public_url(cache_path)

    def _check_entry(self, entry: CacheEntry) -> None:
        if not (self.root / entry.cache_path).is_file():
            raise StaleEntry(entry.cache_path)

    def _read_source(self, path: Path) -> bytes:
        try:
            content = path.read_bytes()
        except OSError as e:
            raise SourceUnreadable(f"{path}: {e}") from e
        if not content:
            raise SourceUnreadable(f"{path}: empty file")
        return content


# -------------------- Protection --------------------


def policy_text(settings: Settings) -> str:
    exts = "|".join(sorted(settings.extensions))
    map_re = re.escape(settings.map_name)
    return (
        "Options -Indexes\n"
        "RewriteEngine On\n"
        f"RewriteRule ^{map_re}$ - [F]\n"
        "<IfModule mod_headers.c>\n"
        f'  <FilesMatch "\\.({exts})$">\n'
        f'    Header set Cache-Control "{settings.cache_control}"\n'
        "  </FilesMatch>\n"
        "</IfModule>\n"
    )


def ensure_protection(settings: Settings) -> bool:
    root = settings.cache_root
    try:
        root.mkdir(parents=True, exist_ok=True)
        policy = root / settings.policy_name
        text = policy_text(settings)
        if policy.exists() and policy.read_text(encoding="utf-8") == text:
            return True
        atomic_write_bytes(policy, text.encode("utf-8"))
        logger.info("wrote cache policy: %s", policy)
        return True
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("cache protection incomplete for %s: %s", root, e)
        return False


# -------------------- Tag sanitizer --------------------


def _strip_versions_in_tag(tag: str, params: Set[str]) -> str:
    def repl(m: re.Match) -> str:
        u = m.group("u")
        nu = strip_version_params(html.unescape(u), params)
        if nu == html.unescape(u):
            return m.group(0)
        return f"{m.group('pre')}{html.escape(nu, quote=True)}{m.group('q')}"

    return URL_ATTR_RE.sub(repl, tag)


def sanitize_style_tag(tag: str, version_params: Iterable[str] = ("ver",)) -> str:
    tag = ID_ATTR_RE.sub("", tag)
    return _strip_versions_in_tag(tag, set(version_params))


def sanitize_script_tag(tag: str, version_params: Iterable[str] = ("ver",)) -> str:
    tag = SCRIPT_TYPE_RE.sub("", tag)
    return sanitize_style_tag(tag, version_params)


# -------------------- Collaborators --------------------


@dataclass
class Resource:
    handle: str
    src: Optional[str]


class ResourceRegistry:
    def enumerate_resources(self, kind: str) -> Iterable[Resource]:
        raise NotImplementedError

    def set_resource_url(self, handle: str, url: str) -> None:
        raise NotImplementedError


class MemResources(ResourceRegistry):
    def __init__(self, init: Optional[Mapping[str, Mapping[str, str]]] = None):
        # kind -> handle -> src
        self._r: Dict[str, Dict[str, str]] = {
            k: dict(v) for k, v in (init or {}).items()
        }
        self._kind_of: Dict[str, str] = {
            h: k for k, v in self._r.items() for h in v
        }

    def register(self, kind: str, handle: str, src: str) -> None:
        self._r.setdefault(kind, {})[handle] = src
        self._kind_of[handle] = kind

    def get(self, handle: str) -> Optional[str]:
        kind = self._kind_of.get(handle)
        return None if kind is None else self._r[kind].get(handle)

    def enumerate_resources(self, kind: str) -> Iterable[Resource]:
        return [Resource(h, s) for h, s in self._r.get(kind, {}).items()]

    def set_resource_url(self, handle: str, url: str) -> None:
        self._r[self._kind_of[handle]][handle] = url


class MediaLibrary:
    def attachment_url(self, attachment_id: int) -> Optional[str]:
        raise NotImplementedError

    def attachment_mime_type(self, attachment_id: int) -> Optional[str]:
        raise NotImplementedError


class MemMedia(MediaLibrary):
    def __init__(self, init: Optional[Mapping[int, Tuple[str, str]]] = None):
        # id -> (url, mime type)
        self._m: Dict[int, Tuple[str, str]] = dict(init or {})

    def add(self, attachment_id: int, url: str, mime_type: str) -> None:
        self._m[attachment_id] = (url, mime_type)

    def attachment_url(self, attachment_id: int) -> Optional[str]:
        v = self._m.get(attachment_id)
        return v[0] if v else None

    def attachment_mime_type(self, attachment_id: int) -> Optional[str]:
        v = self._m.get(attachment_id)
        return v[1] if v else None


# -------------------- Rewriters --------------------


def line_offsets(text: str) -> List[int]:
    offsets = [0]
    pos = text.find("\n")
    while pos != -1:
        offsets.append(pos + 1)
        pos = text.find("\n", pos + 1)
    return offsets


def splice(text: str, edits: Iterable[Tuple[int, int, str]]) -> str:
    """Replace non-overlapping ``(start, end, replacement)`` ranges in ``text``."""
    out = []
    last = len(text)
    for s, e, repl in sorted(edits, key=lambda x: x[0], reverse=True):
        out.append(text[e:last])
        out.append(repl)
        last = s
    out.append(text[:last])
    return "".join(reversed(out))


def srcset_url_spans(value: str) -> List[Tuple[int, int]]:
    """Return ``(start, end)`` of each candidate URL in a srcset value.

    Follows the HTML candidate-splitting rules: a URL runs to whitespace,
    trailing commas end the candidate, and descriptors run to the next comma
    outside parentheses. Commas inside a URL (``data:`` URIs) are kept.
    """
    spans: List[Tuple[int, int]] = []
    n = len(value)
    pos = 0
    while pos < n:
        while pos < n and (value[pos].isspace() or value[pos] == ","):
            pos += 1
        if pos >= n:
            break
        start = pos
        while pos < n and not value[pos].isspace():
            pos += 1
        end = pos
        if value[end - 1] == ",":
            while end > start and value[end - 1] == ",":
                end -= 1
            if end > start:
                spans.append((start, end))
            continue
        spans.append((start, end))
        depth = 0
        while pos < n:
            c = value[pos]
            if c == "(":
                depth += 1
            elif c == ")" and depth:
                depth -= 1
            elif c == "," and not depth:
                break
            pos += 1
    return spans


def tag_attribute_spans(
    markup: str, start: int
) -> Tuple[Optional[str], Dict[str, Tuple[int, int]]]:
    """Locate attribute values of the start tag beginning at ``start``.

    Returns the lowercased tag name and ``{attr: (value_start, value_end)}``
    for every attribute that carries a value. The first occurrence of a
    duplicated attribute wins; ``_rewrite_markup`` parses with
    ``on_duplicate_attribute="ignore"`` so the soup agrees.
    """
    m = TAG_NAME_RE.match(markup, start)
    if not m:
        return None, {}
    spans: Dict[str, Tuple[int, int]] = {}
    pos = m.end()
    while True:
        am = ATTR_RE.match(markup, pos)
        if not am:
            break
        pos = am.end()
        name = am.group(1).lower()
        for g in (2, 3, 4):
            if am.group(g) is not None:
                spans.setdefault(name, (am.start(g), am.end(g)))
                break
    return m.group(1).lower(), spans


class AssetShield:
    """Facade tying the cache store to the host's rendering hooks."""

    def __init__(
        self,
        settings: Settings,
        *,
        media: Optional[MediaLibrary] = None,
    ):
        settings.validate()
        self.s = settings
        self.media = media
        self.protected = ensure_protection(settings)
        self.resolver = PathResolver(settings)
        self.store = CacheStore(settings, self.resolver)

    @classmethod
    def from_config(cls, path: str, **kwargs) -> "AssetShield":
        return cls(load_settings(path), **kwargs)

    def new_context(self) -> RequestContext:
        return RequestContext()

    def should_process(self, url: Optional[str]) -> bool:
        return self.resolver.is_local(url)

    def cached_url(
        self, url: Optional[str], kind: Optional[str], ctx: RequestContext
    ) -> Optional[str]:
        if not self.should_process(url):
            return None
        hit = ctx.memo.lookup(url, kind)
        if hit is not None:
            ctx.stats["memo"] += 1
            return hit
        new = self.store.get_cached_url(url, kind, ctx)
        if new is not None:
            ctx.memo.store(url, new, kind)
        return new

    def rewrite_url(
        self, url: str, kind: Optional[str] = None, ctx: Optional[RequestContext] = None
    ) -> str:
        try:
            new = self.cached_url(url, kind, ctx or self.new_context())
        except Exception:
            logger.exception("url rewrite failed: %s", url)
            return url
        return url if new is None else new

    # registration time

    def process_assets(
        self, registry: ResourceRegistry, ctx: Optional[RequestContext] = None
    ) -> int:
        ctx = ctx or self.new_context()
        changed = 0
        for kind in ("js", "css"):
            try:
                resources = list(registry.enumerate_resources(kind))
            except Exception:
                logger.exception("failed to enumerate %s resources", kind)
                continue
            for res in resources:
                if not self.should_process(res.src):
                    continue
                new = self.rewrite_url(res.src, kind, ctx)
                if new == res.src:
                    continue
                try:
                    registry.set_resource_url(res.handle, new)
                    changed += 1
                except Exception:
                    logger.exception("failed to update resource %s", res.handle)
        logger.debug("rewrote %d registered resources", changed)
        return changed

    # attribute urls

    def rewrite_script_url(self, src: str, ctx: Optional[RequestContext] = None) -> str:
        return self.rewrite_url(src, "js", ctx)

    def rewrite_style_url(self, src: str, ctx: Optional[RequestContext] = None) -> str:
        return self.rewrite_url(src, "css", ctx)

    def rewrite_attachment_url(
        self,
        url: str,
        attachment_id: Optional[int] = None,
        ctx: Optional[RequestContext] = None,
    ) -> str:
        kind: Optional[str] = url_suffix(url) or None
        if self.media is not None and attachment_id is not None:
            try:
                mime = self.media.attachment_mime_type(attachment_id)
            except Exception:
                logger.exception("mime lookup failed for attachment %s", attachment_id)
                return url
            if not mime or not mime.lower().startswith("image/"):
                return url
            kind = kind or ext_for_mime(mime)
        elif kind not in self.s.image_extensions:
            return url
        return self.rewrite_url(url, kind, ctx)

    def attachment_cached_url(
        self, attachment_id: int, ctx: Optional[RequestContext] = None
    ) -> Optional[str]:
        if self.media is None:
            return None
        try:
            url = self.media.attachment_url(attachment_id)
        except Exception:
            logger.exception("url lookup failed for attachment %s", attachment_id)
            return None
        if not url:
            return None
        return self.rewrite_attachment_url(url, attachment_id, ctx)

    # responsive images

    def rewrite_srcset(self, value: str, ctx: Optional[RequestContext] = None) -> str:
        if not value or not value.strip():
            return value
        ctx = ctx or self.new_context()
        edits: List[Tuple[int, int, str]] = []
        for s, e in srcset_url_spans(value):
            url_part = value[s:e]
            url_out = self.rewrite_url(url_part, None, ctx)
            if url_out != url_part:
                edits.append((s, e, url_out))
        if not edits:
            return value
        return splice(value, edits)

    def rewrite_image_set(
        self,
        sources: Mapping[object, Mapping[str, object]],
        ctx: Optional[RequestContext] = None,
    ) -> Dict[object, Dict[str, object]]:
        ctx = ctx or self.new_context()
        out: Dict[object, Dict[str, object]] = {}
        for k, cand in sources.items():
            item = dict(cand)
            u = item.get("url")
            if isinstance(u, str):
                item["url"] = self.rewrite_url(u, None, ctx)
            out[k] = item
        return out

    # output buffer

    def _targets(self, tag, any_src: bool) -> List[Tuple[str, Optional[str]]]:
        name = tag.name
        targets: List[Tuple[str, Optional[str]]] = []
        if name == "script" and tag.has_attr("src"):
            targets.append(("src", "js"))
        elif name == "link" and tag.has_attr("href"):
            rels = tag.get("rel") or []
            if isinstance(rels, str):
                rels = rels.split()
            rels = {r.lower() for r in rels}
            if rels & self.s.link_rels:
                targets.append(("href", "css" if "stylesheet" in rels else None))
        elif tag.has_attr("src") and (any_src or name == "img"):
            targets.append(("src", None))
        if name in ("img", "source") and tag.has_attr("srcset"):
            targets.append(("srcset", None))
        return targets

    def _rewrite_markup(self, markup: str, ctx: RequestContext, any_src: bool) -> str:
        soup = BeautifulSoup(markup, "html.parser", on_duplicate_attribute="ignore")
        offsets = line_offsets(markup)
        edits: List[Tuple[int, int, str]] = []
        for tag in soup.find_all(True):
            if tag.sourceline is None or tag.sourcepos is None:
                continue
            targets = self._targets(tag, any_src)
            if not targets:
                continue
            start = offsets[tag.sourceline - 1] + tag.sourcepos
            name, spans = tag_attribute_spans(markup, start)
            if name != tag.name:
                logger.debug("tag position mismatch at %d for <%s>", start, tag.name)
                continue
            for attr, hint in targets:
                span = spans.get(attr)
                if span is None:
                    continue
                raw = markup[span[0] : span[1]]
                value = html.unescape(raw).strip()
                if attr == "srcset":
                    new = self.rewrite_srcset(value, ctx)
                else:
                    new = self.rewrite_url(value, hint, ctx)
                if new != value:
                    edits.append((span[0], span[1], html.escape(new, quote=True)))
        if not edits:
            return markup
        return splice(markup, edits)

    def process_output(self, markup: str, ctx: Optional[RequestContext] = None) -> str:
        if not markup:
            return markup
        try:
            return self._rewrite_markup(markup, ctx or self.new_context(), False)
        except Exception:
            logger.exception("output rewrite failed")
            return markup

    def process_content(self, text: str, ctx: Optional[RequestContext] = None) -> str:
        if not text or "src" not in text.lower():
            return text
        try:
            return self._rewrite_markup(text, ctx or self.new_context(), True)
        except Exception:
            logger.exception("content rewrite failed")
            return text

    # tags

    def sanitize_script_tag(self, tag: str) -> str:
        return sanitize_script_tag(tag, self.s.version_params)

    def sanitize_style_tag(self, tag: str) -> str:
        return sanitize_style_tag(tag, self.s.version_params)

    # host hooks

    def output_filter(self) -> Callable[[str], str]:
        def transform(markup: str) -> str:
            return self.process_output(markup, self.new_context())

        return transform


# -------------------- WSGI --------------------


def _charset_of(content_type: str) -> str:
    for part in content_type.split(";")[1:]:
        k, _, v = part.strip().partition("=")
        if k.lower() == "charset" and v:
            return v.strip("\"'")
    return "utf-8"


def _wants_rewrite(environ, status: str, headers: List[Tuple[str, str]]) -> bool:
    if environ.get("REQUEST_METHOD", "GET").upper() == "HEAD":
        return False
    try:
        code = int(status.split(None, 1)[0])
    except (ValueError, IndexError):
        return False
    if code < 200 or code in (204, 304):
        return False
    hmap = {k.lower(): v for k, v in headers}
    if "content-encoding" in hmap:
        return False
    return hmap.get("content-type", "").lower().startswith("text/html")


class OutputBufferMiddleware:
    """Buffer HTML responses and run them through ``AssetShield.process_output``.

    Only decodable HTML bodies of ``GET``-style responses are buffered. Every
    other response goes straight to the server, iterable and headers intact.
    """

    def __init__(self, app, shield: AssetShield):
        self.app = app
        self.shield = shield

    def __call__(self, environ, start_response):
        state: Dict[str, object] = {}
        written: List[bytes] = []

        def buffered_start(status, headers, exc_info=None):
            headers = list(headers)
            if _wants_rewrite(environ, status, headers):
                state["buffered"] = (status, headers, exc_info)
                return written.append
            state["buffered"] = None
            return start_response(status, headers, exc_info)

        result = self.app(environ, buffered_start)
        head: List[bytes] = []
        it = None
        if "buffered" not in state:
            # generator apps call start_response on their first step
            it = iter(result)
            try:
                for chunk in it:
                    head.append(chunk)
                    if "buffered" in state:
                        break
            except BaseException:
                _close(result)
                raise
            if "buffered" not in state:
                _close(result)
                raise RuntimeError("application returned without calling start_response")

        if state["buffered"] is None:
            if it is None:
                return result
            return _chain(head, it, result)

        try:
            written.extend(head)
            for chunk in (result if it is None else it):
                written.append(chunk)
        finally:
            _close(result)

        status, headers, exc_info = state["buffered"]
        raw = b"".join(written)
        body = self._transform(headers, raw)
        if body != raw:
            headers = [(k, v) for k, v in headers if k.lower() != "content-length"]
            headers.append(("Content-Length", str(len(body))))
        start_response(status, headers, exc_info)
        return [body]

    def _transform(self, headers: List[Tuple[str, str]], body: bytes) -> bytes:
        hmap = {k.lower(): v for k, v in headers}
        charset = _charset_of(hmap.get("content-type", ""))
        try:
            text = body.decode(charset)
        except (LookupError, UnicodeDecodeError) as e:
            logger.debug("skip output rewrite, undecodable body: %s", e)
            return body
        new = self.shield.process_output(text, self.shield.new_context())
        if new == text:
            return body
        return new.encode(charset, errors="xmlcharrefreplace")


def _close(result) -> None:
    close = getattr(result, "close", None)
    if close is not None:
        close()


def _chain(head: List[bytes], it, result):
    try:
        yield from head
        yield from it
    finally:
        _close(result)
