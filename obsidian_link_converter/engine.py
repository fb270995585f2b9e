import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, unquote

# ---------------------------------------------------------------------------
# Obsidian link conversion engine
# ---------------------------------------------------------------------------
#
# Wiki-links (raw markdown, before rendering):
#   [[Target]]                 -> [Target](/posts/<abbrlink>)
#   [[Target|Alias]]           -> [Alias](/posts/<abbrlink>)
#   [[Target#Section A]]       -> [Target](/posts/<abbrlink>#Section%20A)
#   [[Target#Section|Alias]]   -> [Alias](/posts/<abbrlink>#Section)
#
# Residual markdown-file links (rendered output):
#   <a href="../dir/Note.md">  -> <a href="/posts/<abbrlink>">
#   [text](note.md#frag)       -> [text](/posts/<abbrlink>#frag)
#
# Resolution order, per candidate key derived from the target:
#   1. post title
#   2. post slug
#   3. post source path (without extension and without the _posts/ prefix)
#   4. post source basename
# The first candidate with a hit in any of the four maps wins.
#
# Anything that does not resolve is left byte-for-byte unchanged.  Fenced
# code blocks and inline code spans are never touched.
# ---------------------------------------------------------------------------

WIKI_LINK_RE = re.compile(r"\[\[([^\]]+)\]\]")

HTML_MD_HREF_RE = re.compile(
    r"(href\s*=\s*[\"'])"  # href=" or href='
    r"([^\"']+?\.md(?:#[^\"']*)?)"  # path ending in .md, optional #fragment
    r"([\"'])",
    re.IGNORECASE,
)

MARKDOWN_MD_LINK_RE = re.compile(
    r"\[([^\]]+)\]"  # [text]
    r"\(([^\n]+?\.md(?:#[^\n]+)?)\)",  # (path.md#fragment)
    re.IGNORECASE,
)

# Opening/closing fence: up to three spaces, then 3+ backticks or tildes
FENCE_RE = re.compile(r"^ {0,3}([`~]{3,})")

EXTERNAL_LINK_RE = re.compile(r"^(https?:|mailto:|tel:|//)", re.IGNORECASE)

_MARKDOWN_EXT_RE = re.compile(r"\.(md|markdown)\Z", re.IGNORECASE)
_LEADING_DOT_SEGMENTS_RE = re.compile(r"^(\.\./|\./)+")
_POSTS_PREFIX_RE = re.compile(r"^(?:.*/)?_posts/")
_MALFORMED_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")

# Characters encodeURIComponent leaves alone (besides alphanumerics and -_.~)
_URI_COMPONENT_SAFE = "!*'()"

PERMALINK_ROOT = "/posts/"


# ---------------------------------------------------------------------------
# Key normalisation
# ---------------------------------------------------------------------------


def normalize_lookup_key(value):
    """Canonical, case-insensitive key for titles, slugs, paths and targets."""
    return str(value or "").strip().replace("\\", "/").strip("/").lower()


def strip_markdown_extension(value):
    return _MARKDOWN_EXT_RE.sub("", value)


def strip_leading_dot_segments(value):
    """Drop any ``../`` and ``./`` prefixes left over from relative hrefs."""
    return _LEADING_DOT_SEGMENTS_RE.sub("", value)


def normalize_base(base):
    """Trim a URL prefix and drop its trailing slashes."""
    raw = str(base or "").strip()
    if not raw:
        return ""
    return raw.rstrip("/")


def safe_decode_uri(value):
    """Percent-decode *value*; return it unchanged if the escapes are malformed."""
    if _MALFORMED_ESCAPE_RE.search(value):
        return value
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def encode_uri_component(value):
    return quote(value, safe=_URI_COMPONENT_SAFE)


def trim_slashes(value):
    return str(value or "").strip("/")


# ---------------------------------------------------------------------------
# Post index
# ---------------------------------------------------------------------------


@dataclass
class Post:
    """A published post as seen by the link converter."""

    title: Optional[str] = None
    slug: Optional[str] = None
    source: Optional[str] = None
    abbrlink: Optional[str] = None


def post_field(post, name):
    """Read *name* from a post given either as an object or as a mapping."""
    if isinstance(post, dict):
        return post.get(name)
    return getattr(post, name, None)


class PostIndex:
    """Four lookup maps from normalised keys to post records."""

    def __init__(self):
        self.by_title = {}
        self.by_slug = {}
        self.by_source_path = {}
        self.by_source_base = {}
        self.indexed_count = 0

    def maps(self):
        """The lookup maps in resolution priority order."""
        return (self.by_title, self.by_slug, self.by_source_path, self.by_source_base)

    def add(self, post):
        """Index *post*; posts without an abbrlink are ignored.

        Returns True when the post was indexed.  Later posts overwrite
        earlier ones on colliding keys.
        """
        if not post or not post_field(post, "abbrlink"):
            return False
        self.indexed_count += 1

        title = post_field(post, "title")
        if title:
            self.by_title[normalize_lookup_key(title)] = post

        slug = post_field(post, "slug")
        if slug:
            self.by_slug[normalize_lookup_key(slug)] = post

        source = post_field(post, "source")
        if source:
            normalized = _POSTS_PREFIX_RE.sub("", normalize_lookup_key(source))
            source_no_ext = strip_markdown_extension(normalized)
            source_base = source_no_ext.rsplit("/", 1)[-1]
            if source_no_ext:
                self.by_source_path[source_no_ext] = post
            if source_base:
                self.by_source_base[source_base] = post

        return True


def build_post_index(posts):
    """Build a :class:`PostIndex` from an ordered iterable of posts."""
    index = PostIndex()
    for post in posts or ():
        index.add(post)
    return index


# ---------------------------------------------------------------------------
# Target resolution
# ---------------------------------------------------------------------------


def build_target_candidates(target):
    """
    Ordered, de-duplicated lookup keys for a raw link target.

    "../Notes/Setup.md" -> ["notes/setup.md", "notes/setup", "setup.md", "setup"]
    """
    normalized = normalize_lookup_key(strip_leading_dot_segments(str(target or "")))
    if not normalized:
        return []

    candidates = [normalized, strip_markdown_extension(normalized)]
    if "/" in normalized:
        base = normalized.rsplit("/", 1)[-1]
        candidates.append(base)
        candidates.append(strip_markdown_extension(base))

    return [key for key in dict.fromkeys(candidates) if key]


def resolve_post_by_target(index, target):
    """Return the post *target* refers to, or None.

    Candidate-major: every map is tried for the first candidate before the
    next candidate is considered.
    """
    for key in build_target_candidates(target):
        for mapping in index.maps():
            post = mapping.get(key)
            if post:
                return post
    return None


def make_permalink(post, domain_prefix=""):
    return f"{domain_prefix}{PERMALINK_ROOT}{trim_slashes(post_field(post, 'abbrlink'))}"


# ---------------------------------------------------------------------------
# Code-span-safe rewriting
# ---------------------------------------------------------------------------


def replace_outside_inline_code(line, replacer):
    """Apply *replacer* to the parts of *line* outside inline code spans.

    A run of N backticks opens a span that closes at the next occurrence of
    the same N-backtick token.  An unclosed opener leaves the rest of the
    line untouched.
    """
    result = []
    cursor = 0

    while cursor < len(line):
        start = line.find("`", cursor)
        if start == -1:
            result.append(replacer(line[cursor:]))
            break

        result.append(replacer(line[cursor:start]))

        ticks = 1
        while start + ticks < len(line) and line[start + ticks] == "`":
            ticks += 1

        end = line.find("`" * ticks, start + ticks)
        if end == -1:
            result.append(line[start:])
            break

        result.append(line[start:end + ticks])
        cursor = end + ticks

    return "".join(result)


def replace_outside_code(content, replacer):
    """
    Apply *replacer* to *content*, skipping fenced code blocks and inline
    code.  Line breaks and everything inside code are preserved exactly.

    Fences are tracked line by line: a fence line opens a block, and only a
    fence of the same character with at least the opening length closes
    it.  Other fence-like lines inside a block are ordinary code.
    """
    lines = content.split("\n")
    fence_char = ""
    fence_len = 0

    for i, line in enumerate(lines):
        match = FENCE_RE.match(line)
        if match:
            token = match.group(1)
            if not fence_char:
                fence_char = token[0]
                fence_len = len(token)
            elif token[0] == fence_char and len(token) >= fence_len:
                fence_char = ""
                fence_len = 0
            continue

        if not fence_char:
            lines[i] = replace_outside_inline_code(line, replacer)

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Link replacers
# ---------------------------------------------------------------------------


@dataclass
class WikiLink:
    target: str
    anchor: str = ""
    alias: str = ""


def parse_wiki_link(raw):
    """Split a ``[[...]]`` payload into target, anchor and alias.

    The first ``|`` separates the alias; the first ``#`` before it separates
    the anchor.
    """
    target_and_anchor, pipe, alias = raw.partition("|")
    target, _, anchor = target_and_anchor.partition("#")
    return WikiLink(target=target.strip(), anchor=anchor.strip(), alias=alias.strip() if pipe else "")


def _split_fragment(raw_href):
    path, _, fragment = raw_href.partition("#")
    return path, fragment


def _rewrite_md_href(index, raw_href, domain_prefix):
    """New href for a ``.md`` link, or None when it should stay as-is."""
    if EXTERNAL_LINK_RE.match(raw_href):
        return None

    path, fragment = _split_fragment(raw_href)
    post = resolve_post_by_target(index, safe_decode_uri(path))
    if not post or not post_field(post, "abbrlink"):
        return None

    anchor = f"#{encode_uri_component(safe_decode_uri(fragment))}" if fragment else ""
    return make_permalink(post, domain_prefix) + anchor


def create_wiki_link_replacer(index, domain_prefix=""):
    """Replacer turning ``[[...]]`` wiki-links into markdown permalinks."""

    def replace_wiki_links(segment):
        def _replace(match):
            link = parse_wiki_link(match.group(1))
            if not link.target:
                return match.group(0)

            post = resolve_post_by_target(index, link.target)
            if not post or not post_field(post, "abbrlink"):
                return match.group(0)

            anchor = f"#{encode_uri_component(link.anchor)}" if link.anchor else ""
            text = link.alias or link.target
            return f"[{text}]({make_permalink(post, domain_prefix)}{anchor})"

        return WIKI_LINK_RE.sub(_replace, segment)

    return replace_wiki_links


def create_html_md_href_replacer(index, domain_prefix=""):
    """Replacer for ``href="...md"`` attributes in rendered HTML."""

    def replace_md_hrefs(html):
        def _replace(match):
            prefix, raw_href, suffix = match.groups()
            href = _rewrite_md_href(index, raw_href, domain_prefix)
            if href is None:
                return match.group(0)
            return f"{prefix}{href}{suffix}"

        return HTML_MD_HREF_RE.sub(_replace, html)

    return replace_md_hrefs


def create_markdown_md_link_replacer(index, domain_prefix=""):
    """Replacer for ``[text](...md)`` links to indexed posts."""

    def replace_markdown_md_links(content):
        def _replace(match):
            text, raw_href = match.groups()
            href = _rewrite_md_href(index, raw_href, domain_prefix)
            if href is None:
                return match.group(0)
            return f"[{text}]({href})"

        return MARKDOWN_MD_LINK_RE.sub(_replace, content)

    return replace_markdown_md_links
