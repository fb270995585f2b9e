"""Tests for converter registration, caching and configuration."""

import logging

import pytest

from obsidian_link_converter.engine import Post
from obsidian_link_converter.plugin import (
    AFTER_POST_RENDER,
    BEFORE_GENERATE,
    BEFORE_POST_RENDER,
    ChainedPostSource,
    ContentRecord,
    ConverterConfig,
    HookRegistry,
    IndexCache,
    register,
)

HELLO = Post(title="Hello Hexo", slug="hello-hexo", abbrlink="abcd1234")


# ---------------------------------------------------------------------------
# Fakes -- stand-ins for the host's post store and filter registry
# ---------------------------------------------------------------------------


class CountingSource:
    """Post source that records how often it was queried."""

    def __init__(self, posts=None):
        self.items = list(posts or [])
        self.calls = 0

    def posts(self):
        self.calls += 1
        return list(self.items)


class NoRegistry:
    """A host without a filter registry."""


def make_host(posts=None, config=None):
    hooks = HookRegistry()
    source = CountingSource(posts if posts is not None else [HELLO])
    converter = register(hooks, config or {}, post_source=source)
    return hooks, source, converter


def render(hooks, content, event=BEFORE_POST_RENDER):
    return hooks.fire(event, ContentRecord(content=content)).content


# ===========================================================================
# 1. Configuration
# ===========================================================================


class TestConverterConfig:
    def test_defaults(self):
        config = ConverterConfig.from_dict({})
        assert config.enable is True
        assert config.domain_prefix == ""
        assert config.debug is False

    def test_domain_prefix_normalised(self):
        config = ConverterConfig.from_dict({"domain_prefix": " https://example.com/blog/ "})
        assert config.domain_prefix == "https://example.com/blog"

    def test_disable(self):
        assert ConverterConfig.from_dict({"enable": False}).enable is False

    def test_legacy_spelling(self):
        assert ConverterConfig.from_dict({"enbale": False}).enable is False

    def test_enable_takes_precedence(self):
        assert ConverterConfig.from_dict({"enable": True, "enbale": False}).enable is True

    def test_only_literal_false_disables(self):
        assert ConverterConfig.from_dict({"enable": 0}).enable is True
        assert ConverterConfig.from_dict({"enable": None}).enable is True

    def test_non_mapping(self):
        assert ConverterConfig.from_dict(None) == ConverterConfig()
        assert ConverterConfig.from_dict("yes") == ConverterConfig()


# ===========================================================================
# 2. Registration
# ===========================================================================


class TestRegistration:
    def test_registers_three_callbacks(self):
        hooks, _, converter = make_host()
        assert converter is not None
        assert set(hooks.handlers) == {BEFORE_GENERATE, BEFORE_POST_RENDER, AFTER_POST_RENDER}
        assert len(hooks) == 3

    def test_disabled_registers_nothing(self):
        hooks, _, converter = make_host(config={"enable": False})
        assert converter is None
        assert len(hooks) == 0

    def test_legacy_disabled_registers_nothing(self):
        hooks, _, converter = make_host(config={"enbale": False})
        assert converter is None
        assert len(hooks) == 0

    def test_second_registration_is_noop(self):
        hooks, _, _ = make_host()
        assert register(hooks, {}, post_source=CountingSource()) is None
        assert len(hooks) == 3

    def test_host_without_registry(self):
        assert register(NoRegistry(), {}) is None
        assert register(None, {}) is None

    def test_accepts_config_object(self):
        hooks = HookRegistry()
        converter = register(hooks, ConverterConfig(domain_prefix="https://x"),
                             post_source=CountingSource([HELLO]))
        assert converter.config.domain_prefix == "https://x"


# ===========================================================================
# 3. Pipeline callbacks
# ===========================================================================


class TestPipeline:
    def test_wiki_links_with_domain_prefix(self):
        hooks, _, _ = make_host(config={"domain_prefix": "https://example.com/blog/"})
        hooks.fire(BEFORE_GENERATE)
        result = render(hooks, "[[Hello Hexo]] [[Hello Hexo|Click]] [[hello-hexo#Section A]] [[Missing]]")
        assert result == (
            "[Hello Hexo](https://example.com/blog/posts/abcd1234) "
            "[Click](https://example.com/blog/posts/abcd1234) "
            "[hello-hexo](https://example.com/blog/posts/abcd1234#Section%20A) "
            "[[Missing]]"
        )

    def test_missing_target_unchanged(self):
        hooks, _, _ = make_host()
        assert render(hooks, "See [[Missing Target]].") == "See [[Missing Target]]."

    def test_content_without_wiki_links_skips_index(self):
        hooks, source, _ = make_host()
        assert render(hooks, "nothing here") == "nothing here"
        assert source.calls == 0

    def test_after_render_without_md_skips_index(self):
        hooks, source, _ = make_host()
        assert render(hooks, "<p>x</p>", AFTER_POST_RENDER) == "<p>x</p>"
        assert source.calls == 0

    def test_after_render_rewrites_href_and_markdown(self):
        post = Post(title="Note", source="source/_posts/dir/Note(With Parens).md", abbrlink="44007")
        hooks, _, _ = make_host(posts=[post])
        html = '<a href="../dir/Note(With%20Parens).md">x</a> [text](note(with parens).md#frag)'
        assert render(hooks, html, AFTER_POST_RENDER) == (
            '<a href="/posts/44007">x</a> [text](/posts/44007#frag)'
        )

    def test_md_links_rewritten_before_render(self):
        hooks, _, _ = make_host()
        content = "[Hi](hello-hexo.md#Part%20One) and `[Hi](hello-hexo.md)` and [No](missing.md)"
        assert render(hooks, content) == (
            "[Hi](/posts/abcd1234#Part%20One) and `[Hi](hello-hexo.md)` and [No](missing.md)"
        )

    def test_md_link_and_wiki_link_together(self):
        hooks, _, _ = make_host()
        assert render(hooks, "[[Hello Hexo]] [x](Hello-Hexo.MD)") == (
            "[Hello Hexo](/posts/abcd1234) [x](/posts/abcd1234)"
        )

    def test_records_without_content_pass_through(self):
        hooks, _, _ = make_host()
        assert hooks.fire(BEFORE_POST_RENDER, None) is None
        record = ContentRecord(content=None)
        assert hooks.fire(BEFORE_POST_RENDER, record) is record

    def test_dict_post_records(self):
        hooks, _, _ = make_host(posts=[{"title": "From Dict", "abbrlink": "d1"}])
        assert render(hooks, "[[from dict]]") == "[from dict](/posts/d1)"


# ===========================================================================
# 4. Index caching
# ===========================================================================


class TestIndexCaching:
    def test_index_built_once_per_cycle(self):
        hooks, source, _ = make_host()
        hooks.fire(BEFORE_GENERATE)
        render(hooks, "[[Hello Hexo]]")
        render(hooks, "[[hello-hexo]]")
        render(hooks, '<a href="hello-hexo.md">', AFTER_POST_RENDER)
        assert source.calls == 1

    def test_invalidation_rebuilds(self):
        hooks, source, _ = make_host()
        render(hooks, "[[Hello Hexo]]")
        hooks.fire(BEFORE_GENERATE)
        render(hooks, "[[Hello Hexo]]")
        assert source.calls == 2

    def test_empty_index_is_rebuilt(self):
        hooks, source, _ = make_host(posts=[])
        hooks.fire(BEFORE_GENERATE)
        assert render(hooks, "[[Hello Hexo]]") == "[[Hello Hexo]]"

        source.items = [HELLO]
        assert render(hooks, "[[Hello Hexo]]") == "[Hello Hexo](/posts/abcd1234)"
        assert source.calls == 2

    def test_cache_without_source(self):
        index, rebuilt = IndexCache().get_or_build()
        assert rebuilt is True
        assert index.indexed_count == 0

    def test_callable_source(self):
        cache = IndexCache(lambda: [HELLO])
        index, _ = cache.get_or_build()
        assert index.indexed_count == 1
        assert cache.get_or_build() == (index, False)


# ===========================================================================
# 5. Post sources
# ===========================================================================


class TestChainedPostSource:
    def test_primary_wins(self):
        primary = CountingSource([HELLO])
        fallback = CountingSource([Post(title="Other", abbrlink="o")])
        assert ChainedPostSource(primary, fallback).posts() == [HELLO]
        assert fallback.calls == 0

    def test_falls_back_when_primary_empty(self):
        other = Post(title="Other", abbrlink="o")
        chained = ChainedPostSource(CountingSource([]), None, CountingSource([other]))
        assert chained.posts() == [other]

    def test_all_empty(self):
        assert ChainedPostSource(CountingSource([]), lambda: None).posts() == []
        assert ChainedPostSource().posts() == []


# ===========================================================================
# 6. Hook registry
# ===========================================================================


class TestHookRegistry:
    def test_fire_threads_value(self):
        hooks = HookRegistry()
        hooks.register("x", lambda v: v + 1)
        hooks.register("x", lambda v: v * 10)
        assert hooks.fire("x", 1) == 20

    def test_none_result_keeps_value(self):
        hooks = HookRegistry()
        hooks.register("x", lambda v: None)
        assert hooks.fire("x", "keep") == "keep"

    def test_unknown_event(self):
        assert HookRegistry().fire("nope", "data") == "data"


# ===========================================================================
# 7. Diagnostics
# ===========================================================================


class TestDebugLogging:
    @pytest.fixture()
    def logger(self):
        return logging.getLogger("obsidian_link_converter.test")

    def test_debug_messages(self, caplog, logger):
        hooks = HookRegistry()
        register(hooks, {"debug": True}, post_source=CountingSource([HELLO]), logger=logger)
        with caplog.at_level(logging.INFO, logger=logger.name):
            hooks.fire(BEFORE_GENERATE)
            hooks.fire(BEFORE_POST_RENDER, ContentRecord(content="[[Hello Hexo]]", source="a.md"))
        messages = [r.getMessage() for r in caplog.records]
        assert any("index invalidated" in m for m in messages)
        assert any("index refreshed count=1" in m for m in messages)
        assert any(
            "source=a.md" in m and "before=[[Hello Hexo]]" in m and "after=[Hello Hexo](/posts/abcd1234)" in m
            for m in messages
        )
        assert all(m.startswith("[obsidian-link-converter]") for m in messages)

    def test_silent_without_debug(self, caplog, logger):
        hooks = HookRegistry()
        register(hooks, {}, post_source=CountingSource([HELLO]), logger=logger)
        with caplog.at_level(logging.DEBUG, logger=logger.name):
            hooks.fire(BEFORE_GENERATE)
            hooks.fire(BEFORE_POST_RENDER, ContentRecord(content="[[Hello Hexo]]"))
        assert caplog.records == []

    def test_unknown_source_label(self, caplog, logger):
        hooks = HookRegistry()
        register(hooks, {"debug": True}, post_source=CountingSource([HELLO]), logger=logger)
        with caplog.at_level(logging.INFO, logger=logger.name):
            hooks.fire(AFTER_POST_RENDER, ContentRecord(content='<a href="hello-hexo.md">'))
        assert any("source=unknown" in r.getMessage() for r in caplog.records)
