"""Rewrite Obsidian wiki-links and .md links into abbrlink permalinks."""

from obsidian_link_converter.engine import (
    Post,
    PostIndex,
    build_post_index,
    build_target_candidates,
    create_html_md_href_replacer,
    create_markdown_md_link_replacer,
    create_wiki_link_replacer,
    parse_wiki_link,
    replace_outside_code,
    resolve_post_by_target,
)
from obsidian_link_converter.plugin import (
    ChainedPostSource,
    ContentRecord,
    ConverterConfig,
    HookRegistry,
    IndexCache,
    LinkConverter,
    register,
)

__all__ = [
    "Post",
    "PostIndex",
    "build_post_index",
    "build_target_candidates",
    "resolve_post_by_target",
    "parse_wiki_link",
    "replace_outside_code",
    "create_wiki_link_replacer",
    "create_html_md_href_replacer",
    "create_markdown_md_link_replacer",
    "ChainedPostSource",
    "ContentRecord",
    "ConverterConfig",
    "HookRegistry",
    "IndexCache",
    "LinkConverter",
    "register",
]
