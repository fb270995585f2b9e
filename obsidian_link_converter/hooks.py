import logging

from mkdocs.utils.meta import get_data

from obsidian_link_converter.engine import Post
from obsidian_link_converter.plugin import (
    AFTER_POST_RENDER,
    BEFORE_GENERATE,
    BEFORE_POST_RENDER,
    CONFIG_KEY,
    LOG_TAG,
    ContentRecord,
    HookRegistry,
    register,
)

log = logging.getLogger("mkdocs.hooks")

# ---------------------------------------------------------------------------
# MkDocs binding
# ---------------------------------------------------------------------------
#
# Enable in mkdocs.yml:
#
#   hooks:
#     - obsidian_link_converter/hooks.py
#
#   extra:
#     obsidian_link_converter:
#       domain_prefix: https://example.com/blog
#       debug: false
#
# Each page that should be linkable needs an `abbrlink` in its front matter:
#
#   ---
#   title: Hello World
#   abbrlink: abcd1234
#   ---
#
# on_files          -> before_generate    (index dropped, rebuilt lazily)
# on_page_markdown  -> before_post_render (wiki-links and .md links rewritten)
# on_page_content   -> after_post_render  (leftover .md links rewritten)
# ---------------------------------------------------------------------------


def _meta_str(meta, key):
    value = meta.get(key)
    if value is None or value == "":
        return None
    return str(value)


class FrontMatterPostSource:
    """Posts read from the front matter of every documentation page."""

    def __init__(self, files):
        self.files = files

    def posts(self):
        posts = []
        for f in self.files:
            if not f.is_documentation_page():
                continue
            try:
                text = f.content_string
            except (OSError, UnicodeDecodeError) as exc:
                log.debug(f"{LOG_TAG} Skipping {f.src_path}: {exc}")
                continue
            _, meta = get_data(text)
            posts.append(
                Post(
                    title=_meta_str(meta, "title"),
                    slug=_meta_str(meta, "slug"),
                    source=f.src_path,
                    abbrlink=_meta_str(meta, "abbrlink"),
                )
            )
        return posts


# ---------------------------------------------------------------------------
# Module-level state -- re-created each build via on_config()
# ---------------------------------------------------------------------------

_hooks = HookRegistry()
_converter = None


def on_config(config, **kwargs):
    """Read extra.obsidian_link_converter and register the converter."""
    global _hooks, _converter
    _hooks = HookRegistry()

    extra = config.get("extra") or {}
    _converter = register(_hooks, extra.get(CONFIG_KEY) or {}, logger=log)
    if _converter is None:
        log.info(f"{LOG_TAG} Disabled")

    return config


def on_files(files, config, **kwargs):
    """Point the index at this build's pages and drop the cached index."""
    if _converter is not None:
        _converter.cache.source = FrontMatterPostSource(files)
    _hooks.fire(BEFORE_GENERATE)
    return files


def on_page_markdown(markdown, page, config, files, **kwargs):
    record = ContentRecord(content=markdown, source=page.file.src_path, path=page.url)
    return _hooks.fire(BEFORE_POST_RENDER, record).content


def on_page_content(html, page, config, files, **kwargs):
    record = ContentRecord(content=html, source=page.file.src_path, path=page.url)
    return _hooks.fire(AFTER_POST_RENDER, record).content
