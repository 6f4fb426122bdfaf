#!/usr/bin/env python3
import argparse
import base64
import binascii
import codecs
import logging
import posixpath
import re
import sys
import threading
import webbrowser
from dataclasses import dataclass
from email import errors as email_errors
from email import policy
from email.message import Message
from email.parser import BytesParser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple, Union
from urllib.parse import SplitResult, quote, unquote, urljoin, urlsplit

import chardet
from bs4 import BeautifulSoup, FeatureNotFound, ParserRejectedMarkup, Tag
from bs4.dammit import EncodingDetector

# -------------------- Config --------------------

DONE_SIGNAL_PATH = "/done-signal"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
LEGACY_DEFAULT_ENCODING = "cp1252"
UTF8_COMPATIBLE = {"utf-8", "ascii"}
SNIFF_MIN_CONFIDENCE = 0.5

WITH_SCHEME_RE = re.compile(r"^[a-z]+:")
CSS_URL_RE = re.compile(r"\burl\(([^()]+)\)")
CSS_IMPORT_RE = re.compile(r"""@import\s+(["'])([^"']+)\1""", re.IGNORECASE)
CHARSET_PARAM_RE = re.compile(r"""charset\s*=\s*["']?([^"';\s]+)""", re.IGNORECASE)
CHARSET_STRIP_RE = re.compile(r"""\s*;\s*charset\s*=\s*("[^"]*"|'[^']*'|[^;]*)""", re.IGNORECASE)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
DURATION_FULL_RE = re.compile(r"(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+")

DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

REWRITE_ATTRS = ("src", "href", "background")
SRCSET_TAGS = {"img", "source"}

ONLOAD_SCRIPT = """
window.addEventListener("load", function () {
  var req = new XMLHttpRequest();
  req.open("GET", "/done-signal");
  req.send();
});
"""

# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    host: str = "127.0.0.1"
    port: int = 0
    open_browser: bool = True


# -------------------- Errors --------------------


class ArchiveError(Exception):
    pass


class ParseError(ArchiveError):
    pass


class CharsetError(ArchiveError):
    pass


class RewriteError(ArchiveError):
    pass


# -------------------- Utils --------------------


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def is_html(content_type: Optional[str]) -> bool:
    return media_type(content_type) == "text/html"


def is_css(content_type: Optional[str]) -> bool:
    return media_type(content_type) == "text/css"


def strip_charset_param(content_type: str) -> str:
    return CHARSET_STRIP_RE.sub("", content_type).strip()


def can_fetch_url(u: str) -> bool:
    if not u:
        return False
    u = u.strip().lower()
    if u.startswith(("#", "mailto:", "tel:", "javascript:", "data:", "about:")):
        return False
    return True


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a timeout such as ``15s``, ``1m30s``, ``500ms`` or ``20``."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        text = str(value).strip()
        try:
            seconds = float(text)
        except ValueError:
            if not DURATION_FULL_RE.fullmatch(text):
                raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
            seconds = sum(
                float(n) * DURATION_UNITS[unit] for n, unit in DURATION_RE.findall(text)
            )
    if seconds < 0:
        raise argparse.ArgumentTypeError(f"negative duration: {value!r}")
    return seconds


# -------------------- Resource store --------------------


@dataclass
class Resource:
    location: str
    content_type: str
    data: bytes
    base_url: SplitResult
    content_id: Optional[str] = None
    is_initial_document: bool = False
    was_converted: bool = False
    encoding: str = "utf-8"


class ResourceStore:
    """Resources keyed by original location, plus the Content-ID index.

    Filled once by the parser, rewritten in place, then sealed; after
    ``seal()`` the set of resources can no longer change.
    """

    def __init__(self) -> None:
        self._resources: Dict[str, Resource] = {}
        self._by_cid: Dict[str, str] = {}
        self._sealed = False
        self.initial_document: Optional[Resource] = None

    def add(self, res: Resource) -> bool:
        if self._sealed:
            raise RuntimeError("resource store is sealed")
        if res.location in self._resources:
            return False
        self._resources[res.location] = res
        if res.content_id:
            self._by_cid.setdefault(res.content_id, res.location)
        if self.initial_document is None and is_html(res.content_type):
            res.is_initial_document = True
            self.initial_document = res
        return True

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    def get(self, location: str) -> Optional[Resource]:
        return self._resources.get(location)

    def location_for_cid(self, cid: str) -> Optional[str]:
        return self._by_cid.get(cid)

    def lookup(self, key: str) -> Optional[Resource]:
        res = self._resources.get(key)
        if res is not None:
            return res
        folded = key.lower()
        for location, candidate in self._resources.items():
            if location.lower() == folded:
                return candidate
        return None

    def __iter__(self) -> Iterator[Resource]:
        return iter(list(self._resources.values()))

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, location: object) -> bool:
        return location in self._resources


# -------------------- Archive parser --------------------


def _header(part: Message, name: str) -> str:
    value = part.get(name)
    return str(value).strip() if value is not None else ""


def _strip_brackets(cid: str) -> str:
    if cid.startswith("<") and cid.endswith(">"):
        return cid[1:-1]
    return cid


def decode_part_payload(part: Message) -> bytes:
    cte = _header(part, "Content-Transfer-Encoding").lower()
    if cte == "base64":
        raw = part.get_payload(decode=False)
        if not isinstance(raw, str):
            raise ParseError("base64 part has no text payload")
        try:
            return base64.b64decode("".join(raw.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ParseError(f"invalid base64 payload: {e}") from e
    payload = part.get_payload(decode=True)
    return payload or b""


def parse_archive(fp: BinaryIO) -> ResourceStore:
    try:
        msg = BytesParser(policy=policy.default).parse(fp)
    except (OSError, email_errors.MessageError) as e:
        raise ParseError(f"cannot read archive: {e}") from e

    for defect in msg.defects:
        if isinstance(
            defect,
            (email_errors.StartBoundaryNotFoundDefect, email_errors.CloseBoundaryNotFoundDefect),
        ):
            raise ParseError(f"malformed multipart archive: {defect.__class__.__name__}")
    if not msg.is_multipart() or not msg.get_boundary():
        raise ParseError(
            "archive is not multipart or has no boundary: %r" % _header(msg, "Content-Type")
        )

    store = ResourceStore()
    for idx, part in enumerate(msg.walk()):
        if part.is_multipart():
            continue
        location = _header(part, "Content-Location")
        cid = _strip_brackets(_header(part, "Content-ID")) or None
        if not location:
            if not cid:
                logging.warning("part %d has no Content-Location or Content-ID; skipped", idx)
                continue
            location = f"cid:{cid}"
        try:
            base_url = urlsplit(location)
        except ValueError as e:
            raise ParseError(f"malformed Content-Location {location!r}: {e}") from e

        data = decode_part_payload(part)
        content_type = _header(part, "Content-Type") or DEFAULT_CONTENT_TYPE
        res = Resource(
            location=location,
            content_type=content_type,
            data=data,
            base_url=base_url,
            content_id=cid,
        )
        if not store.add(res):
            logging.warning("duplicate Content-Location %s; later part skipped", location)
            continue
        logging.debug("part %s (%s, %d bytes)", location, content_type, len(data))

    if store.initial_document is None:
        raise ParseError("no HTML pages to display")
    logging.info(
        "loaded %d resources; initial document %s",
        len(store),
        store.initial_document.location,
    )
    return store


def load_archive(path: Union[str, Path]) -> ResourceStore:
    try:
        with open(path, "rb") as f:
            return parse_archive(f)
    except OSError as e:
        raise ParseError(f"cannot open {path}: {e}") from e


# -------------------- Charset normalizer --------------------


def canonical_encoding(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    try:
        return codecs.lookup(name.strip().strip("\"'")).name
    except LookupError:
        return None


def determine_encoding(data: bytes, content_type: Optional[str]) -> Tuple[str, bool]:
    """Return ``(encoding, certain)`` for an HTML document.

    BOM, then the Content-Type charset, then a ``<meta>`` declaration, then
    byte sniffing. When nothing is conclusive the legacy Western default is
    returned with ``certain`` false.
    """
    _, bom = EncodingDetector.strip_byte_order_mark(data)
    enc = canonical_encoding(bom)
    if enc:
        return enc, True

    m = CHARSET_PARAM_RE.search(content_type or "")
    enc = canonical_encoding(m.group(1)) if m else None
    if enc:
        return enc, True

    enc = canonical_encoding(EncodingDetector.find_declared_encoding(data, is_html=True))
    if enc:
        # a <meta> readable as ASCII cannot be UTF-16
        if enc.startswith("utf-16"):
            enc = "utf-8"
        return enc, True

    try:
        data.decode("utf-8")
        return "utf-8", False
    except UnicodeDecodeError:
        pass
    guess = chardet.detect(data)
    enc = canonical_encoding(guess.get("encoding"))
    if enc and (guess.get("confidence") or 0.0) >= SNIFF_MIN_CONFIDENCE:
        return enc, False
    return LEGACY_DEFAULT_ENCODING, False


def normalize_charset(res: Resource) -> None:
    if not is_html(res.content_type):
        return
    enc, certain = determine_encoding(res.data, res.content_type)
    if enc in UTF8_COMPATIBLE:
        res.encoding = "utf-8"
        return
    if enc == LEGACY_DEFAULT_ENCODING and not certain:
        # latin-1 round-trips every byte, so the document passes through as-is
        res.encoding = "latin-1"
        return
    try:
        text = res.data.decode(enc)
    except UnicodeDecodeError as e:
        raise CharsetError(f"cannot decode {res.location} as {enc}: {e}") from e
    if text.startswith("\ufeff"):
        text = text[1:]
    res.data = text.encode("utf-8")
    res.content_type = strip_charset_param(res.content_type)
    res.was_converted = True
    res.encoding = "utf-8"
    logging.debug("converted %s from %s to utf-8", res.location, enc)


# -------------------- URL resolution --------------------


def resolve(base: SplitResult, ref: str) -> str:
    if WITH_SCHEME_RE.match(ref):
        return ref
    if ref.startswith("//"):
        return f"{base.scheme}:{ref}"
    host = base.netloc.rpartition("@")[2]
    if ref.startswith("/"):
        return f"{base.scheme}://{host}{ref}"
    path = posixpath.normpath(posixpath.join("/", posixpath.dirname(base.path), ref))
    return f"{base.scheme}://{host}{path}"


def local_path(url: str) -> str:
    return "/" + quote(url, safe="")


def rewrite_reference(ref: str, base: SplitResult, store: ResourceStore) -> Optional[str]:
    """Local path for ``ref``, or None when the reference stays as written."""
    value = ref.strip()
    if not can_fetch_url(value):
        return None
    if value.lower().startswith("cid:"):
        location = store.location_for_cid(value[4:])
        if location is None:
            logging.debug("unresolved content-id reference: %s", value)
            return None
        value = location
    return local_path(resolve(base, value))


# -------------------- CSS rewriting --------------------


def needs_css_pass(css: str) -> bool:
    return "url(" in css or "@import" in css.lower()


def rewrite_css(css: str, base: SplitResult, store: ResourceStore) -> str:
    def repl_url(m: re.Match) -> str:
        u = m.group(1).strip().strip("\"'")
        nu = rewrite_reference(u, base, store)
        if nu is None:
            return m.group(0)
        return f"url({nu})"

    def repl_import(m: re.Match) -> str:
        nu = rewrite_reference(m.group(2), base, store)
        if nu is None:
            return m.group(0)
        return f"@import url({nu})"

    t = CSS_URL_RE.sub(repl_url, css)
    t = CSS_IMPORT_RE.sub(repl_import, t)
    return t


def rewrite_css_resource(res: Resource, store: ResourceStore) -> None:
    # surrogateescape keeps bytes outside the rewritten tokens unchanged
    text = res.data.decode("utf-8", "surrogateescape")
    if not needs_css_pass(text):
        return
    res.data = rewrite_css(text, res.base_url, store).encode("utf-8", "surrogateescape")


# -------------------- HTML rewriting --------------------


def bs4_parse(html: str) -> BeautifulSoup:
    try:
        return BeautifulSoup(html, "lxml")
    except FeatureNotFound:
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> str:
    # no eventual encoding: leave <meta charset> values exactly as set
    return soup.decode(eventual_encoding=None, formatter="html")


def take_base_override(soup: BeautifulSoup, location: str) -> Optional[SplitResult]:
    tags = soup.select("head > base[href]")
    if not tags:
        return None
    href = tags[0].get("href", "").strip()
    try:
        base = urlsplit(urljoin(location, href))
    except ValueError as e:
        raise RewriteError(f"malformed <base href={href!r}>: {e}") from e
    for tag in tags:
        tag.decompose()
    return base


def is_rewritable(tag: Tag, attr: str) -> bool:
    # anchors keep their live href so following a link leaves the archive
    return not (tag.name == "a" and attr == "href")


def rewrite_srcset(value: str, base: SplitResult, store: ResourceStore) -> Optional[str]:
    parts: List[str] = []
    changed = False
    for candidate in SRCSET_SPLIT_RE.split(value.strip()):
        if not candidate:
            continue
        comp = WS_RE.split(candidate.strip())
        nu = rewrite_reference(comp[0], base, store)
        if nu is not None:
            comp[0] = nu
            changed = True
        parts.append(" ".join(comp))
    return ", ".join(parts) if changed else None


def rewrite_tag_attrs(tag: Tag, base: SplitResult, store: ResourceStore) -> None:
    rewritten = False
    for attr in REWRITE_ATTRS:
        val = tag.get(attr)
        if not isinstance(val, str) or not is_rewritable(tag, attr):
            continue
        nu = rewrite_reference(val, base, store)
        if nu is not None:
            tag[attr] = nu
            rewritten = True
    if tag.name in SRCSET_TAGS and isinstance(tag.get("srcset"), str):
        srcset = rewrite_srcset(tag["srcset"], base, store)
        if srcset is not None:
            tag["srcset"] = srcset
            rewritten = True
    if rewritten and "integrity" in tag.attrs:
        del tag.attrs["integrity"]


def rewrite_inline_css(soup: BeautifulSoup, base: SplitResult, store: ResourceStore) -> None:
    for style in soup.find_all("style"):
        text = style.get_text()
        if needs_css_pass(text):
            style.string = rewrite_css(text, base, store)
    for tag in soup.find_all(style=True):
        css = tag.get("style")
        if isinstance(css, str) and needs_css_pass(css):
            tag["style"] = rewrite_css(css, base, store)


def declare_utf8(soup: BeautifulSoup) -> None:
    for meta in soup.find_all("meta"):
        if str(meta.get("http-equiv", "")).strip().lower() == "content-type":
            meta["content"] = "text/html; charset=utf-8"
        elif meta.has_attr("charset"):
            meta["charset"] = "utf-8"


def inject_done_signal(soup: BeautifulSoup) -> None:
    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        (soup.html or soup).insert(0, head)
    script = soup.new_tag("script")
    script.string = ONLOAD_SCRIPT
    head.append(script)


def rewrite_html(res: Resource, store: ResourceStore) -> None:
    # invalid bytes become U+FFFD, as in a browser
    try:
        soup = bs4_parse(res.data.decode(res.encoding, "replace"))
    except ParserRejectedMarkup as e:
        raise RewriteError(f"cannot parse {res.location}: {e}") from e

    base = take_base_override(soup, res.location)
    if base is not None:
        res.base_url = base

    for tag in soup.find_all(True):
        rewrite_tag_attrs(tag, res.base_url, store)
    rewrite_inline_css(soup, res.base_url, store)

    if res.was_converted:
        declare_utf8(soup)
    if res.is_initial_document:
        inject_done_signal(soup)

    try:
        res.data = serialize_html(soup).encode(res.encoding, "xmlcharrefreplace")
    except (ValueError, RecursionError) as e:
        raise RewriteError(f"cannot serialize {res.location}: {e}") from e


def rewrite_store(store: ResourceStore) -> None:
    for res in store:
        if is_html(res.content_type):
            normalize_charset(res)
            rewrite_html(res, store)
        elif is_css(res.content_type):
            rewrite_css_resource(res, store)
    store.seal()


# -------------------- Content server --------------------


class ContentRequestHandler(BaseHTTPRequestHandler):
    server: "ContentServer"

    def do_GET(self) -> None:  # noqa: N802
        self._serve(send_body=True)

    def do_HEAD(self) -> None:  # noqa: N802
        self._serve(send_body=False)

    def _serve(self, send_body: bool) -> None:
        path = self.path.split("?", 1)[0]
        if path == DONE_SIGNAL_PATH:
            self.send_response(204)
            self.end_headers()
            self.server.request_shutdown("done-signal")
            return
        res = self.server.store.lookup(unquote(path[1:]))
        if res is None:
            self.send_error(404)
            return
        self.send_response(200)
        self.send_header("Content-Type", res.content_type)
        self.send_header("Content-Length", str(len(res.data)))
        self.end_headers()
        if send_body:
            self.wfile.write(res.data)

    def log_message(self, format: str, *args) -> None:
        logging.debug("%s %s", self.address_string(), format % args)


class ContentServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: Tuple[str, int], store: ResourceStore):
        super().__init__(address, ContentRequestHandler)
        self.store = store
        self.done = threading.Event()
        self.shutdown_reason: Optional[str] = None
        self._lock = threading.Lock()

    def request_shutdown(self, reason: str) -> None:
        with self._lock:
            if self.done.is_set():
                return
            self.shutdown_reason = reason
            self.done.set()

    @property
    def url(self) -> str:
        host, port = self.server_address[:2]
        return f"http://{host}:{port}"


# -------------------- Lifecycle --------------------


def start_server(store: ResourceStore, settings: Settings) -> ContentServer:
    server = ContentServer((settings.host, settings.port), store)
    thread = threading.Thread(target=server.serve_forever, name="unmht-server", daemon=True)
    thread.start()
    logging.info("serving %d resources at %s", len(store), server.url)
    return server


def serve_archive(
    store: ResourceStore,
    settings: Settings,
    opener: Callable[[str], bool] = webbrowser.open,
) -> int:
    if store.initial_document is None:
        raise ParseError("no HTML pages to display")
    server = start_server(store, settings)
    initial_url = server.url + local_path(store.initial_document.location)

    opened = False
    if settings.open_browser:
        try:
            opened = bool(opener(initial_url))
            if not opened:
                logging.warning("couldn't start browser")
        except webbrowser.Error as e:
            logging.warning("couldn't start browser: %s", e)

    timer: Optional[threading.Timer] = None
    if opened:
        timer = threading.Timer(settings.timeout, server.request_shutdown, args=("timeout",))
        timer.daemon = True
        timer.start()
    else:
        logging.info("Open the following URL manually:")
        print(initial_url, flush=True)

    try:
        server.done.wait()
    except KeyboardInterrupt:
        server.request_shutdown("interrupted")
    finally:
        if timer is not None:
            timer.cancel()
        server.shutdown()
        server.server_close()
    logging.info("stopped (%s)", server.shutdown_reason)
    return 0


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, object]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf == ".toml":
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError:
            raise RuntimeError("YAML config requires 'PyYAML'")
        with open(p, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise RuntimeError(f"invalid YAML config: {e}")
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="unmht",
        usage="unmht [-t TIMEOUT] FILE",
        description="View an MHTML web archive in the default browser.",
    )
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)
    p.add_argument("file", nargs="*", help="MHTML archive")
    p.add_argument(
        "-t",
        "--timeout",
        type=parse_duration,
        default="15s",
        help="shut down after this long once the browser is open (default: 15s)",
    )
    p.add_argument("--port", type=int, default=0, help="local port (default: any free port)")
    p.add_argument(
        "--no-browser",
        action="store_true",
        help="print the URL instead of opening a browser; wait for the page to load",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        try:
            cfg = load_config_file(preliminary.config)
        except (RuntimeError, OSError, ValueError) as e:
            parser.error(f"config {preliminary.config}: {e}")
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("general", "server"):
                if isinstance(cfg.get(g), dict):
                    flat.update(cfg[g])
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if len(args.file) != 1:
        build_arg_parser().print_usage(sys.stderr)
        return 0

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    settings = Settings(
        timeout=parse_duration(args.timeout),
        port=max(0, int(args.port)),
        open_browser=not args.no_browser,
    )

    try:
        store = load_archive(args.file[0])
        rewrite_store(store)
    except ArchiveError as e:
        logging.error("%s", e)
        return 1
    return serve_archive(store, settings)


if __name__ == "__main__":
    sys.exit(main())
