"""Registration of the link converter against a build pipeline.

The converter needs three things from its host, each optional:

* a hook registry -- any object with a ``register(name, fn)`` method;
* a post source -- any object with a ``posts()`` method (or a plain
  callable) returning the published posts in order;
* a logger for diagnostics, used only when ``debug`` is enabled.

Three callbacks are registered::

    before_generate     -> drop the cached post index
    before_post_render  -> rewrite [[wiki-links]] and .md links in raw markdown
    after_post_render   -> rewrite leftover .md links in rendered output
"""

import logging
import re
import threading
import weakref
from dataclasses import dataclass

from obsidian_link_converter.engine import (
    build_post_index,
    create_html_md_href_replacer,
    create_markdown_md_link_replacer,
    create_wiki_link_replacer,
    normalize_base,
    replace_outside_code,
)

log = logging.getLogger("mkdocs.hooks")

CONFIG_KEY = "obsidian_link_converter"
LOG_TAG = "[obsidian-link-converter]"

BEFORE_GENERATE = "before_generate"
BEFORE_POST_RENDER = "before_post_render"
AFTER_POST_RENDER = "after_post_render"

# Patterns used only for the debug before/after samples
_SAMPLE_WIKI_RE = re.compile(r"\[\[[^\]]+\]\]")
_SAMPLE_MD_LINK_RE = re.compile(r"\[[^\]]+\]\([^)]+\)")
_SAMPLE_MD_FILE_LINK_RE = re.compile(r"\[[^\]]+\]\([^)]+\.md(?:#[^)]+)?\)", re.IGNORECASE)
_SAMPLE_MD_HREF_RE = re.compile(r"href\s*=\s*[\"'][^\"']+\.md(?:#[^\"']*)?[\"']", re.IGNORECASE)
_SAMPLE_POSTS_LINK_RE = re.compile(r"\[[^\]]+\]\([^)]+/posts/[^)]+\)", re.IGNORECASE)
_SAMPLE_POSTS_HREF_RE = re.compile(r"href\s*=\s*[\"'][^\"']+/posts/[^\"']+[\"']", re.IGNORECASE)

_registered_hosts = weakref.WeakSet()


def _first_match(content, pattern):
    match = pattern.search(content)
    return match.group(0) if match else ""


# ---------------------------------------------------------------------------
# Data records
# ---------------------------------------------------------------------------


@dataclass
class ContentRecord:
    """One document passing through the pipeline."""

    content: str
    source: str = None
    path: str = None


@dataclass
class ConverterConfig:
    enable: bool = True
    domain_prefix: str = ""
    debug: bool = False

    @classmethod
    def from_dict(cls, data):
        """Parse the ``obsidian_link_converter`` config mapping.

        ``enbale`` is accepted as a legacy spelling of ``enable`` and is only
        consulted when ``enable`` itself is absent.
        """
        if not isinstance(data, dict):
            data = {}
        if "enable" in data:
            enable = data["enable"] is not False
        elif "enbale" in data:
            enable = data["enbale"] is not False
        else:
            enable = True
        return cls(
            enable=enable,
            domain_prefix=normalize_base(data.get("domain_prefix") or ""),
            debug=bool(data.get("debug")),
        )


# ---------------------------------------------------------------------------
# Hook registry
# ---------------------------------------------------------------------------


class HookRegistry:
    """Named callback lists; firing threads a value through each callback."""

    def __init__(self):
        self.handlers = {}

    def register(self, name, fn):
        self.handlers.setdefault(name, []).append(fn)

    def fire(self, name, data=None):
        """Call every *name* callback in order; ``None`` keeps the previous value."""
        for fn in self.handlers.get(name, []):
            result = fn(data)
            if result is not None:
                data = result
        return data

    def __len__(self):
        return sum(len(fns) for fns in self.handlers.values())


# ---------------------------------------------------------------------------
# Post sources
# ---------------------------------------------------------------------------


def read_posts(source):
    """Posts from *source*, which may be a post source, a callable or None."""
    if source is None:
        return []
    posts_fn = getattr(source, "posts", None)
    if callable(posts_fn):
        return list(posts_fn() or [])
    if callable(source):
        return list(source() or [])
    return []


class ChainedPostSource:
    """Try several post sources in order; the first non-empty one wins."""

    def __init__(self, *sources):
        self.sources = [s for s in sources if s is not None]

    def posts(self):
        for source in self.sources:
            posts = read_posts(source)
            if posts:
                return posts
        return []


# ---------------------------------------------------------------------------
# Index cache
# ---------------------------------------------------------------------------


class IndexCache:
    """Holds the post index for one generation cycle.

    An index that ended up empty counts as not built, so posts that arrive
    after the first render call are still picked up.
    """

    def __init__(self, source=None):
        self.source = source
        self._index = None
        self._lock = threading.Lock()

    def invalidate(self):
        with self._lock:
            self._index = None

    def get_or_build(self):
        """Return ``(index, rebuilt)``."""
        with self._lock:
            if self._index is None or not self._index.indexed_count:
                self._index = build_post_index(read_posts(self.source))
                return self._index, True
            return self._index, False


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------


class LinkConverter:
    """The three pipeline callbacks bound to one index cache."""

    def __init__(self, cache, config, logger=None):
        self.cache = cache
        self.config = config
        self.logger = logger

    def _debug(self, message):
        if not self.config.debug or self.logger is None:
            return
        info = getattr(self.logger, "info", None)
        if callable(info):
            info(f"{LOG_TAG} {message}")

    def _index(self):
        index, rebuilt = self.cache.get_or_build()
        if rebuilt:
            self._debug(f"index refreshed count={index.indexed_count}")
        return index

    @staticmethod
    def _describe(data):
        return getattr(data, "source", None) or getattr(data, "path", None) or "unknown"

    def before_generate(self, data=None):
        self.cache.invalidate()
        self._debug("index invalidated")
        return data

    def before_post_render(self, data):
        content = getattr(data, "content", None)
        if not isinstance(content, str) or ("[[" not in content and ".md" not in content):
            return data

        before = _first_match(content, _SAMPLE_WIKI_RE) or _first_match(content, _SAMPLE_MD_FILE_LINK_RE)
        index = self._index()
        replace_md_links = create_markdown_md_link_replacer(index, self.config.domain_prefix)
        replace_wiki_links = create_wiki_link_replacer(index, self.config.domain_prefix)

        # .md links first, so links produced from [[...]] are never re-matched
        def replacer(segment):
            return replace_wiki_links(replace_md_links(segment))

        data.content = replace_outside_code(content, replacer)

        after = _first_match(data.content, _SAMPLE_MD_LINK_RE)
        self._debug(
            f"before_post_render source={self._describe(data)} before={before} after={after}"
        )
        return data

    def after_post_render(self, data):
        content = getattr(data, "content", None)
        if not isinstance(content, str) or ".md" not in content:
            return data

        before_md = _first_match(content, _SAMPLE_MD_FILE_LINK_RE)
        before_href = _first_match(content, _SAMPLE_MD_HREF_RE)

        index = self._index()
        replace_md_links = create_markdown_md_link_replacer(index, self.config.domain_prefix)
        replace_md_hrefs = create_html_md_href_replacer(index, self.config.domain_prefix)
        data.content = replace_md_hrefs(replace_md_links(content))

        after_md = _first_match(data.content, _SAMPLE_POSTS_LINK_RE)
        after_href = _first_match(data.content, _SAMPLE_POSTS_HREF_RE)
        self._debug(
            f"after_post_render source={self._describe(data)} beforeMd={before_md} "
            f"beforeHref={before_href} afterMd={after_md} afterHref={after_href}"
        )
        return data


def register(hooks, config=None, post_source=None, logger=log):
    """Register the converter's callbacks on *hooks*.

    Returns the converter, or None when nothing was registered: *hooks* has
    no ``register`` method, it was already registered once, or the
    converter is disabled in *config*.
    """
    if hooks is None or not callable(getattr(hooks, "register", None)):
        return None
    if hooks in _registered_hosts:
        return None
    _registered_hosts.add(hooks)

    settings = config if isinstance(config, ConverterConfig) else ConverterConfig.from_dict(config)
    if not settings.enable:
        return None

    converter = LinkConverter(IndexCache(post_source), settings, logger)
    hooks.register(BEFORE_GENERATE, converter.before_generate)
    hooks.register(BEFORE_POST_RENDER, converter.before_post_render)
    hooks.register(AFTER_POST_RENDER, converter.after_post_render)
    return converter
