#!/usr/bin/env python3
"""Download a web page and its same-origin assets into a local folder."""
import argparse
import logging
import os
import posixpath
import re
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup, Tag
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

__version__ = "1.0.0"

# -------------------- Config --------------------

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.7",
}

NON_TOKEN_CHARS_RE = re.compile(r"[^A-Za-z0-9]")
UNFETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:")
DEFAULT_EXT = ".html"
UNBOUNDED_POOL_SIZE = 128

# tag name -> attribute holding the asset reference
ASSET_ATTRS = {
    "img": "src",
    "script": "src",
    "link": "href",
}


# -------------------- Settings --------------------


@dataclass
class Settings:
    timeout: float = 15.0
    workers: int = 16  # 0 = one worker per asset
    retries: int = 0
    backoff_factor: float = 0.5
    parser: str = "lxml"
    extra_headers: List[str] = field(default_factory=list)  # "Name: value"


# -------------------- Errors --------------------


class PageLoaderError(Exception):
    """Failure of one pipeline phase, wrapping the underlying cause."""

    phase = "page loading"

    def __init__(self, target: Union[str, Path], cause: BaseException):
        self.target = str(target)
        self.cause = cause
        super().__init__(f"Error during {self.phase} '{self.target}'. {cause}")


class PageFetchError(PageLoaderError):
    phase = "page downloading"


class AssetsFolderCreationError(PageLoaderError):
    phase = "assets folder creation"


class AssetFetchError(PageLoaderError):
    phase = "asset downloading"


class AssetSaveError(PageLoaderError):
    phase = "asset saving"


class PageSaveError(PageLoaderError):
    phase = "page saving"


# -------------------- Names --------------------


def _host_port(u: str) -> str:
    p = urlparse(u)
    host = p.hostname or ""
    if p.port is not None:
        host = f"{host}:{p.port}"
    return host


def normalize_url(u: str) -> str:
    p = urlparse(u)
    result = _host_port(u)
    if p.path not in ("", "/"):
        result += p.path
    if p.query:
        result += f"?{p.query}"
    return result


def to_file_token(value: str) -> str:
    return NON_TOKEN_CHARS_RE.sub("-", value)


def page_file_name(page_url: str) -> str:
    return f"{to_file_token(normalize_url(page_url))}.html"


def assets_folder_name(page_url: str) -> str:
    return f"{to_file_token(normalize_url(page_url))}_files"


def asset_file_name(asset_url: str, base_url: str) -> str:
    """Name for a downloaded asset, keeping its real extension.

    ``/assets/p/x.png`` on ``https://example.test`` becomes
    ``example-test-assets-p-x.png``; paths without an extension get ``.html``.
    """
    path = urlparse(urljoin(base_url, asset_url)).path or "/"
    directory, name = posixpath.split(path)
    stem, ext = posixpath.splitext(name)
    ext = f".{to_file_token(ext[1:])}" if ext else DEFAULT_EXT
    seed = f"{_host_port(base_url)}{directory.rstrip('/')}/{stem}"
    return f"{to_file_token(seed)}{ext}"


def validate_page_url(u: str) -> None:
    p = urlparse(u)
    if p.scheme not in {"http", "https"} or not p.hostname:
        raise ValueError(f"Invalid URL {u!r}. Use http:// or https://")


# -------------------- Classification --------------------


@dataclass
class AssetReference:
    tag: Tag
    attr: str
    raw: str
    url: str

    @property
    def kind(self) -> str:
        return self.tag.name


def can_fetch_url(u: Optional[str]) -> bool:
    if not u:
        return False
    u = u.strip()
    if not u or u.startswith(UNFETCHABLE_PREFIXES):
        return False
    return True


def is_local(asset_url: str, page_url: str) -> bool:
    if not can_fetch_url(asset_url):
        return False
    asset_url = asset_url.strip()
    if asset_url.startswith("/") and not asset_url.startswith("//"):
        return True
    resolved = urlparse(urljoin(page_url, asset_url))
    if resolved.scheme not in {"http", "https"}:
        return False
    return resolved.hostname == urlparse(page_url).hostname


def collect_assets(soup: BeautifulSoup, page_url: str) -> List[AssetReference]:
    assets: List[AssetReference] = []
    for tag in soup.find_all(list(ASSET_ATTRS)):
        attr = ASSET_ATTRS[tag.name]
        raw = tag.get(attr)
        if not raw or not is_local(raw, page_url):
            continue
        assets.append(AssetReference(tag, attr, raw, urljoin(page_url, raw.strip())))
    logging.debug("found %d local asset references", len(assets))
    return assets


# -------------------- Output layout --------------------


@dataclass
class FileSystemPlan:
    page_path: Path
    assets_dir: Path
    asset_paths: Dict[str, Path] = field(default_factory=dict)

    @property
    def folder_name(self) -> str:
        return self.assets_dir.name

    def relative_ref(self, url: str) -> str:
        return f"{self.folder_name}/{self.asset_paths[url].name}"


def _with_suffix_number(name: str, n: int) -> str:
    stem, ext = os.path.splitext(name)
    return f"{stem}-{n}{ext}"


def build_plan(
    page_url: str, output_dir: Path, assets: Sequence[AssetReference]
) -> FileSystemPlan:
    plan = FileSystemPlan(
        page_path=output_dir / page_file_name(page_url),
        assets_dir=output_dir / assets_folder_name(page_url),
    )
    taken: Dict[str, str] = {}
    for ref in assets:
        if ref.url in plan.asset_paths:
            continue
        name = asset_file_name(ref.url, page_url)
        candidate, n = name, 1
        while candidate in taken:
            n += 1
            candidate = _with_suffix_number(name, n)
        if candidate != name:
            logging.warning(
                "name clash: %s and %s both map to %s, saving the latter as %s",
                taken[name],
                ref.url,
                name,
                candidate,
            )
        taken[candidate] = ref.url
        plan.asset_paths[ref.url] = plan.assets_dir / candidate
    return plan


# -------------------- HTML utils --------------------


def bs4_parse(html: bytes, parser: str = "lxml") -> BeautifulSoup:
    try:
        return BeautifulSoup(html, parser)
    except Exception:
        logging.debug("parser %s unavailable, using html.parser", parser)
        return BeautifulSoup(html, "html.parser")


def serialize_html(soup: BeautifulSoup) -> bytes:
    try:
        return soup.decode(formatter="html").encode("utf-8")
    except Exception:
        return str(soup).encode("utf-8")


# -------------------- Rewriter --------------------


def rewrite_document(
    soup: BeautifulSoup, assets: Sequence[AssetReference], plan: FileSystemPlan
) -> Tuple[bytes, List[str]]:
    for ref in assets:
        ref.tag[ref.attr] = plan.relative_ref(ref.url)
    urls = list(dict.fromkeys(ref.url for ref in assets))
    return serialize_html(soup), urls


# -------------------- HTTP --------------------


def build_session(settings: Optional[Settings] = None) -> requests.Session:
    settings = settings or Settings()
    s = requests.Session()
    retry = Retry(
        total=settings.retries,
        backoff_factor=settings.backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods={"GET"},
        raise_on_status=False,
        respect_retry_after_header=True,
    )
    pool = settings.workers if settings.workers > 0 else UNBOUNDED_POOL_SIZE
    adapter = HTTPAdapter(max_retries=retry, pool_connections=pool, pool_maxsize=pool)
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    s.headers.update(DEFAULT_HEADERS)
    apply_headers(s, settings.extra_headers)
    return s


def apply_headers(session: requests.Session, headers: Sequence[str]) -> None:
    for h in headers:
        if ":" not in h:
            logging.warning("invalid header (no colon): %s", h)
            continue
        k, v = h.split(":", 1)
        session.headers[k.strip()] = v.strip()


def fetch_bytes(session: requests.Session, url: str, *, timeout: float) -> bytes:
    r = session.get(url, timeout=timeout)
    if not 200 <= r.status_code < 300:
        raise requests.HTTPError(
            f"Request failed with status code {r.status_code}", response=r
        )
    return r.content


# -------------------- Downloaders --------------------


def _pool_size(settings: Settings, jobs: int) -> int:
    if settings.workers <= 0:
        return jobs
    return min(settings.workers, jobs)


def download_all(
    session: requests.Session, urls: Sequence[str], settings: Settings
) -> List[bytes]:
    """Fetch every URL concurrently; results are in the order of ``urls``."""
    results: List[bytes] = [b""] * len(urls)
    if not urls:
        return results
    with ThreadPoolExecutor(max_workers=_pool_size(settings, len(urls))) as pool:
        future_map = {
            pool.submit(fetch_bytes, session, u, timeout=settings.timeout): i
            for i, u in enumerate(urls)
        }
        try:
            for fut in as_completed(future_map):
                i = future_map[fut]
                try:
                    results[i] = fut.result()
                except requests.RequestException as e:
                    logging.warning("failed %s -> %s", urls[i], e)
                    raise AssetFetchError(urls[i], e) from e
                logging.info("downloaded asset: %s", urls[i])
        except AssetFetchError:
            for fut in future_map:
                fut.cancel()
            raise
    return results


def _write_file(path: Path, data: bytes) -> Path:
    path.write_bytes(data)
    return path


def save_all(
    paths: Sequence[Path], contents: Sequence[bytes], settings: Settings
) -> None:
    if not paths:
        return
    with ThreadPoolExecutor(max_workers=_pool_size(settings, len(paths))) as pool:
        future_map = {
            pool.submit(_write_file, p, data): p for p, data in zip(paths, contents)
        }
        try:
            for fut in as_completed(future_map):
                p = future_map[fut]
                try:
                    fut.result()
                except OSError as e:
                    raise AssetSaveError(p, e) from e
                logging.debug("saved asset: %s", p)
        except AssetSaveError:
            for fut in future_map:
                fut.cancel()
            raise


# -------------------- Main: single page --------------------


def load_page(
    page_url: str,
    output_dir: Union[str, Path, None] = None,
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """Save ``page_url`` and its local assets under ``output_dir``.

    Returns the absolute path of the saved page. Each pipeline phase raises its
    own ``PageLoaderError`` subclass; a failure before the asset phases leaves
    the output directory untouched.
    """
    settings = settings or Settings()
    out_root = Path(output_dir) if output_dir is not None else Path.cwd()
    try:
        validate_page_url(page_url)
    except ValueError as e:
        raise PageFetchError(page_url, e) from e
    session = session or build_session(settings)

    logging.info("GET %s", page_url)
    try:
        html = fetch_bytes(session, page_url, timeout=settings.timeout)
    except requests.RequestException as e:
        raise PageFetchError(page_url, e) from e

    soup = bs4_parse(html, settings.parser)
    assets = collect_assets(soup, page_url)
    plan = build_plan(page_url, out_root, assets)
    page_bytes, asset_urls = rewrite_document(soup, assets, plan)

    if asset_urls:
        try:
            plan.assets_dir.mkdir(exist_ok=True)
        except OSError as e:
            raise AssetsFolderCreationError(plan.assets_dir, e) from e

        contents = download_all(session, asset_urls, settings)
        save_all([plan.asset_paths[u] for u in asset_urls], contents, settings)
        logging.info("saved %d assets to %s", len(asset_urls), plan.assets_dir)

    try:
        plan.page_path.write_bytes(page_bytes)
    except OSError as e:
        raise PageSaveError(plan.page_path, e) from e
    return str(plan.page_path.resolve())


# -------------------- Config loader --------------------


def load_config_file(path: str) -> Dict[str, Union[str, int, float, bool, List[str]]]:
    p = Path(path)
    suf = p.suffix.lower()
    if suf in {".toml", ".tml"}:
        import tomllib

        with open(p, "rb") as f:
            return tomllib.load(f) or {}
    elif suf in {".yaml", ".yml"}:
        import yaml

        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise RuntimeError("Top-level YAML must be a mapping")
            return data
    else:
        raise RuntimeError("Unsupported config format. Use .toml or .yaml")


# -------------------- CLI --------------------


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="page-loader",
        description="Loads the page and its resources.",
    )
    p.add_argument("-V", "--version", action="version", version=__version__)
    p.add_argument("--config", type=str, help="path to config.toml|.yaml", default=None)

    p.add_argument("url", help="http(s) URL of the page")
    p.add_argument(
        "-o", "--output", type=str, default=os.getcwd(), help="output directory"
    )
    p.add_argument(
        "--timeout", type=float, default=15.0, help="request timeout seconds"
    )
    p.add_argument(
        "--workers",
        type=int,
        default=16,
        help="concurrent asset downloads (0 = one per asset)",
    )
    p.add_argument(
        "--retries", type=int, default=0, help="transport retries on 429/5xx"
    )
    p.add_argument(
        "--parser",
        type=str,
        choices=["lxml", "html.parser"],
        default="lxml",
        help="HTML parser used by BeautifulSoup",
    )
    p.add_argument(
        "--header",
        action="append",
        default=[],
        help="extra request header 'Name: value'",
    )
    p.add_argument("--verbose", action="store_true", help="debug logging")
    return p


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_arg_parser()
    preliminary, _ = parser.parse_known_args(argv)
    if preliminary.config:
        try:
            cfg = load_config_file(preliminary.config)
        except (OSError, RuntimeError, ValueError) as e:
            parser.error(f"cannot load config {preliminary.config}: {e}")
        if isinstance(cfg, dict):
            flat = dict(cfg)
            for g in ("http", "output", "general"):
                if isinstance(cfg.get(g), dict):
                    flat.update(flat.pop(g))
            parser.set_defaults(**flat)
    return parser.parse_args(argv)


def settings_from_args(args: argparse.Namespace) -> Settings:
    headers = args.header or []
    if isinstance(headers, str):
        headers = [headers]
    return Settings(
        timeout=max(0.1, args.timeout),
        workers=max(0, args.workers),
        retries=max(0, args.retries),
        parser=args.parser,
        extra_headers=headers,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    settings = settings_from_args(args)
    try:
        path = load_page(args.url, args.output, settings)
    except PageLoaderError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print(path)


if __name__ == "__main__":
    main()
