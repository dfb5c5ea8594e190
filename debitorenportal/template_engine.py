"""
Debitorenportal -- Template Engine

Renders merge-field dunning templates (subject, HTML body, text body)
against an ``EmailContext``.

Stored templates use Handlebars-style merge fields because that is what
operators author in the portal:

    {{kunde.name}}                       variable (dotted path)
    {{{bank.iban}}}                      variable, never HTML-escaped
    {{formatCurrency summe.gesamt}}      helper call
    {{#if (gt summe.zinsen 0)}}...{{else}}...{{/if}}
    {{#unless bank.iban}}...{{/unless}}
    {{#each rechnungen}}{{@index}} {{this.invoiceNumber}} {{../kunde.name}}{{/each}}
    {{! comment }}

Responsibilities:
  1. Translate merge-field source into Jinja2 source
  2. Reject malformed templates (unbalanced blocks, unknown helpers) with
     ``TemplateError``
  3. Render in a sandboxed Jinja2 environment; unknown variables render
     as empty strings
  4. Call only helpers from the ``HelperRegistry`` passed in for the
     render -- there is no process-wide helper registration
  5. Load the four default stage templates shipped with the package

Usage:
    from debitorenportal.template_engine import TemplateEngine

    engine = TemplateEngine()
    rendered = engine.render_template(template, context)
    print(rendered.subject)
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

import yaml
from jinja2 import ChainableUndefined, Template, Undefined
from jinja2 import TemplateError as JinjaTemplateError
from jinja2.sandbox import SandboxedEnvironment

from .config import DEFAULT_TEMPLATE_DIR
from .formatting import format_currency, format_date, format_number, to_decimal
from .models import DunningTemplate, RenderedEmail, stage_key

logger = logging.getLogger(__name__)


class TemplateError(Exception):
    """A template is malformed or could not be rendered."""


# ---------------------------------------------------------------------------
# Helper Registry
# ---------------------------------------------------------------------------

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _defined(value):
    """Map Jinja2 undefined values to None before they reach a helper."""
    return None if isinstance(value, Undefined) else value


def _compare(op: Callable[[Any, Any], bool], a, b) -> bool:
    if a is None or b is None:
        return False
    try:
        return bool(op(a, b))
    except (TypeError, ArithmeticError):
        return False


def _add(a, b):
    return to_decimal(a) + to_decimal(b)


class HelperRegistry:
    """Named functions callable from templates.

    Build one with :meth:`default` and pass it to the render call.  Adding
    a helper to one registry never affects another.
    """

    def __init__(self, helpers: Optional[Mapping[str, Callable]] = None) -> None:
        self._helpers: dict[str, Callable] = {}
        for name, func in (helpers or {}).items():
            self.register(name, func)

    @classmethod
    def default(cls) -> HelperRegistry:
        """Registry with the standard dunning helpers."""
        return cls({
            "formatCurrency": format_currency,
            "formatDate": format_date,
            "formatNumber": format_number,
            "eq": lambda a, b: a == b,
            "gt": lambda a, b: _compare(lambda x, y: x > y, a, b),
            "lt": lambda a, b: _compare(lambda x, y: x < y, a, b),
            "add": _add,
        })

    def register(self, name: str, func: Callable) -> None:
        if not _IDENTIFIER.match(name):
            raise ValueError(f"Invalid helper name: {name!r}")
        if not callable(func):
            raise TypeError(f"Helper {name!r} is not callable")
        self._helpers[name] = func

    def copy(self) -> HelperRegistry:
        return HelperRegistry(self._helpers)

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._helpers)

    def __contains__(self, name: object) -> bool:
        return name in self._helpers

    def bound(self) -> dict[str, Callable]:
        """Callables as exposed to a render: undefined args arrive as None."""
        def wrap(name: str, func: Callable) -> Callable:
            def call(*args, **kwargs):
                try:
                    return func(
                        *(_defined(a) for a in args),
                        **{k: _defined(v) for k, v in kwargs.items()},
                    )
                except TemplateError:
                    raise
                except Exception as exc:
                    raise TemplateError(f"Helper '{name}' failed: {exc}") from exc
            return call
        return {name: wrap(name, func) for name, func in self._helpers.items()}


# ---------------------------------------------------------------------------
# Merge-field -> Jinja2 translation
# ---------------------------------------------------------------------------

_TAG_RE = re.compile(
    r"\{\{!--.*?--\}\}"
    r"|\{\{\{(?P<raw>.*?)\}\}\}"
    r"|\{\{(?P<body>.*?)\}\}",
    re.DOTALL,
)

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<open>\()
      | (?P<close>\))
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<word>[^\s()]+)
    )""",
    re.VERBOSE,
)

_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")
_SEGMENT_RE = re.compile(r"^(?:[A-Za-z_][A-Za-z0-9_]*|\d+)$")

_LITERALS = {"true": "true", "false": "false", "null": "none", "undefined": "none"}

_DATA_VARS = {"index": "loop.index0", "first": "loop.first", "last": "loop.last"}


@dataclass
class _Block:
    name: str                # if / unless / each / with / inverted section name
    line: int
    scope_pushed: bool = False
    loop_var: int = 0        # index of the {{#each}} loop variables, 0 if not a loop


class _Translator:
    """Single-use translator from merge-field source to Jinja2 source."""

    def __init__(self, source: str, helpers: frozenset[str]) -> None:
        self.source = source
        self.helpers = helpers
        self.scopes: list[str] = ["_root"]
        self.blocks: list[_Block] = []
        self.loops: list[int] = []
        self.line = 1

    # --- driver ---

    def translate(self) -> str:
        out: list[str] = []
        pos = 0
        for match in _TAG_RE.finditer(self.source):
            out.append(self._literal(self.source[pos:match.start()]))
            self.line = self.source.count("\n", 0, match.start()) + 1
            pos = match.end()

            if match.group("raw") is not None:
                out.append(self._output(match.group("raw"), raw=True))
            elif match.group("body") is not None:
                out.append(self._tag(match.group("body")))
        out.append(self._literal(self.source[pos:]))

        if self.blocks:
            block = self.blocks[-1]
            raise TemplateError(
                f"Unclosed block '{{{{#{block.name}}}}}' opened on line {block.line}"
            )
        return "".join(out)

    def _error(self, message: str) -> TemplateError:
        return TemplateError(f"{message} (line {self.line})")

    # --- literal text ---

    def _literal(self, text: str) -> str:
        if not text:
            return ""
        if "{{" in text:
            self.line = self.source.count("\n", 0, self.source.find(text)) + 1
            raise self._error("Unclosed merge field '{{'")
        if "{%" in text or "{#" in text or text.endswith("{"):
            return "{{ " + repr(text) + "|safe }}"
        return text

    # --- tags ---

    def _tag(self, body: str) -> str:
        trim_left = body.startswith("~")
        trim_right = body.endswith("~")
        body = body.strip("~").strip()
        if not body:
            raise self._error("Empty merge field '{{}}'")

        kind = body[0]
        if kind == "!":
            return ""
        if kind == ">":
            raise self._error("Partials are not supported")
        if kind == "#":
            stmt = self._open_block(body[1:].strip())
        elif kind == "^" and body[1:].strip():
            stmt = self._open_inverse(body[1:].strip())
        elif kind == "/":
            stmt = self._close_block(body[1:].strip())
        elif body == "^" or body == "else" or body.startswith("else "):
            stmt = self._else(body)
        elif kind == "&":
            return self._output(body[1:], raw=True, trim=(trim_left, trim_right))
        else:
            return self._output(body, raw=False, trim=(trim_left, trim_right))

        return ("{%- " if trim_left else "{% ") + stmt + (" -%}" if trim_right else " %}")

    def _open_block(self, body: str) -> str:
        tokens = self._tokens(body)
        if not tokens or tokens[0][0] != "word":
            raise self._error("Block without a name")
        name = tokens[0][1]
        params, kwargs = self._params(tokens[1:])

        if name in ("if", "unless", "each", "with"):
            if len(params) != 1 or kwargs:
                raise self._error(f"'{{{{#{name}}}}}' takes exactly one argument")
            expr = params[0]
        elif name in self.helpers:
            raise self._error(f"Helper '{name}' cannot be used as a block")
        else:
            raise self._error(f"Unknown block helper '{name}'")

        block = _Block(name=name, line=self.line)
        self.blocks.append(block)

        if name == "if":
            return f"if {expr}"
        if name == "unless":
            return f"if not ({expr})"

        n = len(self.scopes)
        block.scope_pushed = True
        self.scopes.append(f"_this{n}")
        if name == "with":
            return f"with _this{n} = {expr}"

        block.loop_var = n
        self.loops.append(n)
        return f"for _key{n}, _this{n} in _each({expr})"

    def _open_inverse(self, body: str) -> str:
        tokens = self._tokens(body)
        if len(tokens) != 1 or tokens[0][0] != "word":
            raise self._error("Inverted section takes a single path")
        name = tokens[0][1]
        self.blocks.append(_Block(name=name, line=self.line))
        return f"if not ({self._path(name)})"

    def _else(self, body: str) -> str:
        if not self.blocks:
            raise self._error("'{{else}}' outside of a block")
        block = self.blocks[-1]
        rest = body[4:].strip() if body.startswith("else") else ""

        if block.name == "each":
            if rest:
                raise self._error("'{{else if}}' is not allowed inside '{{#each}}'")
            # The else branch runs in the enclosing context.
            self._pop_scope(block)
            return "else"
        if block.name == "with":
            raise self._error("'{{else}}' is not allowed inside '{{#with}}'")

        if rest:
            tokens = self._tokens(rest)
            if not tokens or tokens[0] != ("word", "if"):
                raise self._error(f"Unsupported '{{{{else {rest}}}}}'")
            params, kwargs = self._params(tokens[1:])
            if len(params) != 1 or kwargs:
                raise self._error("'{{else if}}' takes exactly one argument")
            return f"elif {params[0]}"
        return "else"

    def _close_block(self, name: str) -> str:
        if not self.blocks:
            raise self._error(f"Unexpected '{{{{/{name}}}}}'")
        block = self.blocks.pop()
        if block.name != name:
            raise self._error(
                f"'{{{{/{name}}}}}' does not match '{{{{#{block.name}}}}}' "
                f"opened on line {block.line}"
            )
        self._pop_scope(block)
        if name == "each":
            return "endfor"
        if name == "with":
            return "endwith"
        return "endif"

    def _pop_scope(self, block: _Block) -> None:
        if block.scope_pushed:
            self.scopes.pop()
            block.scope_pushed = False
        if block.loop_var and self.loops and self.loops[-1] == block.loop_var:
            self.loops.pop()

    # --- expressions ---

    def _output(self, body: str, raw: bool, trim: tuple[bool, bool] = (False, False)) -> str:
        tokens = self._tokens(body.strip())
        if not tokens:
            raise self._error("Empty merge field")
        expr = self._statement_expr(tokens)
        if raw:
            expr = f"({expr})|safe"
        left = "{{- " if trim[0] else "{{ "
        right = " -}}" if trim[1] else " }}"
        return left + expr + right

    def _statement_expr(self, tokens: list[tuple[str, str]]) -> str:
        kind, text = tokens[0]
        if kind == "word" and (text in self.helpers or len(tokens) > 1):
            return self._helper_call(text, tokens[1:])
        if len(tokens) > 1:
            raise self._error("Only helper calls may take arguments")
        params, kwargs = self._params(tokens)
        if kwargs or len(params) != 1:
            raise self._error("Malformed merge field")
        return params[0]

    def _helper_call(self, name: str, arg_tokens: list[tuple[str, str]]) -> str:
        if name not in self.helpers:
            raise self._error(f"Unknown helper '{name}'")
        params, kwargs = self._params(arg_tokens)
        args = params + [f"{k}={v}" for k, v in kwargs.items()]
        return f"_h[{name!r}](" + ", ".join(args) + ")"

    def _params(self, tokens: list[tuple[str, str]]) -> tuple[list[str], dict[str, str]]:
        """Parse positional and ``key=value`` parameters."""
        params: list[str] = []
        kwargs: dict[str, str] = {}
        i = 0
        while i < len(tokens):
            kind, text = tokens[i]
            key = None
            if kind == "word" and "=" in text:
                key, _, text = text.partition("=")
                if not _IDENTIFIER.match(key):
                    raise self._error(f"Invalid hash argument '{key}'")
                if not text:
                    i += 1
                    if i >= len(tokens):
                        raise self._error(f"Missing value for '{key}='")
                    kind, text = tokens[i]

            if kind == "open":
                depth, j = 1, i + 1
                while j < len(tokens) and depth:
                    if tokens[j][0] == "open":
                        depth += 1
                    elif tokens[j][0] == "close":
                        depth -= 1
                    j += 1
                if depth:
                    raise self._error("Unbalanced '(' in subexpression")
                inner = tokens[i + 1:j - 1]
                if not inner or inner[0][0] != "word":
                    raise self._error("Subexpression without a helper name")
                value = self._helper_call(inner[0][1], inner[1:])
                i = j
            elif kind == "close":
                raise self._error("Unbalanced ')' in expression")
            else:
                value = self._param(kind, text)
                i += 1

            if key is None:
                if kwargs:
                    raise self._error("Positional argument after hash argument")
                params.append(value)
            else:
                kwargs[key] = value
        return params, kwargs

    def _param(self, kind: str, text: str) -> str:
        if kind == "string":
            return repr(re.sub(r"\\(.)", r"\1", text[1:-1]))
        if _NUMBER_RE.match(text):
            return text
        if text in _LITERALS:
            return _LITERALS[text]
        return self._path(text)

    def _path(self, text: str) -> str:
        if text.startswith("@"):
            return self._data_var(text[1:])

        scope = len(self.scopes) - 1
        rest = text
        while rest.startswith("../") or rest == "..":
            scope -= 1
            rest = rest[3:]
        if scope < 0:
            raise self._error(f"Path '{text}' climbs above the root context")

        if rest.startswith("./"):
            rest = rest[2:]
        segments = [s for s in re.split(r"[./]", rest) if s] if rest not in ("", ".") else []
        if segments and segments[0] == "this":
            segments = segments[1:]

        return self._subscript(self.scopes[scope], segments, text)

    def _data_var(self, name: str) -> str:
        head, _, tail = name.partition(".")
        if head == "root":
            segments = [s for s in re.split(r"[./]", tail) if s]
            return self._subscript("_root", segments, "@" + name)
        if tail:
            raise self._error(f"'@{head}' has no properties")
        if not self.loops:
            raise self._error(f"'@{head}' used outside of '{{{{#each}}}}'")
        if head == "key":
            return f"_key{self.loops[-1]}"
        if head in _DATA_VARS:
            return _DATA_VARS[head]
        raise self._error(f"Unknown data variable '@{head}'")

    def _subscript(self, base: str, segments: list[str], original: str) -> str:
        expr = base
        for seg in segments:
            if not _SEGMENT_RE.match(seg):
                raise self._error(f"Invalid path '{original}'")
            expr += f"[{seg}]" if seg.isdigit() else f"[{seg!r}]"
        return expr

    def _tokens(self, body: str) -> list[tuple[str, str]]:
        tokens: list[tuple[str, str]] = []
        pos = 0
        body = body.rstrip()
        while pos < len(body):
            match = _TOKEN_RE.match(body, pos)
            if not match or match.end() == pos:
                raise self._error(f"Cannot parse '{body}'")
            kind = match.lastgroup
            tokens.append((kind, match.group(kind)))
            pos = match.end()
        return tokens


def translate(source: str, helpers: Iterable[str]) -> str:
    """Translate merge-field *source* into Jinja2 template source.

    Raises:
        TemplateError: If the template is malformed or calls an unknown helper.
    """
    return _Translator(source, frozenset(helpers)).translate()


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _finalize(value):
    """Render None as '' and booleans in merge-field spelling."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


def _each(value) -> list[tuple[Any, Any]]:
    """(key, item) pairs for ``{{#each}}``; lists are keyed by index."""
    if value is None or isinstance(value, (Undefined, str, bytes)):
        return []
    if isinstance(value, Mapping):
        return list(value.items())
    try:
        return list(enumerate(value))
    except TypeError:
        return []


def _template_data(context) -> Any:
    if hasattr(context, "to_template_data"):
        return context.to_template_data()
    if context is None:
        return {}
    return context


class TemplateEngine:
    """Merge-field renderer backed by sandboxed Jinja2 environments.

    Compiled templates are cached per engine, keyed by source, escaping
    mode and the set of helper names.  Output never depends on the cache.

    Attributes:
        helpers: Registry used when a render call does not pass its own.
    """

    def __init__(
        self,
        helpers: Optional[HelperRegistry] = None,
        cache_size: int = 128,
    ) -> None:
        self.helpers = helpers or HelperRegistry.default()
        self._cache: OrderedDict[tuple[str, bool, frozenset[str]], Template] = OrderedDict()
        self._cache_size = cache_size
        self._envs = {flag: self._make_env(flag) for flag in (False, True)}

    @staticmethod
    def _make_env(autoescape: bool) -> SandboxedEnvironment:
        return SandboxedEnvironment(
            autoescape=autoescape,
            undefined=ChainableUndefined,
            finalize=_finalize,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------

    def compile(
        self,
        source: str,
        helpers: Optional[HelperRegistry] = None,
        *,
        autoescape: bool = False,
    ) -> Template:
        """Translate and compile *source*.

        Raises:
            TemplateError: If the template is malformed.
        """
        registry = helpers or self.helpers
        key = (source, autoescape, registry.names)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            return cached

        jinja_source = translate(source, registry.names)
        try:
            compiled = self._envs[autoescape].from_string(jinja_source)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Template could not be compiled: {exc}") from exc

        self._cache[key] = compiled
        if len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return compiled

    def validate(self, source: str, helpers: Optional[HelperRegistry] = None) -> None:
        """Raise ``TemplateError`` if *source* would not compile."""
        self.compile(source, helpers)

    def render(
        self,
        source: str,
        context,
        helpers: Optional[HelperRegistry] = None,
        *,
        autoescape: bool = False,
    ) -> str:
        """Render a single merge-field template string.

        Args:
            source: Template text.
            context: An ``EmailContext`` or any mapping.
            helpers: Helper registry for this render.  Defaults to the
                engine's registry.
            autoescape: HTML-escape ``{{...}}`` output (``{{{...}}}`` is
                never escaped).

        Raises:
            TemplateError: If the template is malformed or rendering fails.
        """
        registry = helpers or self.helpers
        template = self.compile(source, registry, autoescape=autoescape)
        try:
            return template.render(
                _root=_template_data(context),
                _h=registry.bound(),
                _each=_each,
            )
        except JinjaTemplateError as exc:
            raise TemplateError(f"Template could not be rendered: {exc}") from exc

    def render_template(
        self,
        template: DunningTemplate,
        context,
        helpers: Optional[HelperRegistry] = None,
    ) -> RenderedEmail:
        """Render subject, HTML and text of a stored template.

        The HTML body is escaped; subject and text are not.  A template
        without a text body yields ``text == ""``.
        """
        data = _template_data(context)
        rendered = RenderedEmail(
            subject=self.render(template.subject, data, helpers).strip(),
            html=self.render(template.html_body, data, helpers, autoescape=True),
            text=self.render(template.text_body, data, helpers) if template.text_body else "",
        )
        logger.debug(
            "Rendered template '%s' (%s): %d html chars, %d text chars",
            template.name, template.stage, len(rendered.html), len(rendered.text),
        )
        return rendered


# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------

_INDEX_FILE = "templates.yaml"


def load_default_templates(template_dir: str | Path | None = None) -> list[DunningTemplate]:
    """Load the shipped default templates described by ``templates.yaml``.

    Raises:
        FileNotFoundError: If the index or a referenced body file is missing.
    """
    directory = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
    index_path = directory / _INDEX_FILE
    with open(index_path, "r", encoding="utf-8") as f:
        index = yaml.safe_load(f) or {}

    templates: list[DunningTemplate] = []
    for entry in index.get("templates", []):
        text_file = entry.get("text")
        templates.append(DunningTemplate(
            name=entry["name"],
            stage=entry["stage"],
            subject=entry["subject"],
            html_body=(directory / entry["html"]).read_text(encoding="utf-8"),
            text_body=(directory / text_file).read_text(encoding="utf-8") if text_file else None,
            is_default=bool(entry.get("is_default", False)),
            is_active=bool(entry.get("is_active", True)),
            id=entry.get("id", ""),
        ))

    logger.debug("Loaded %d default templates from %s", len(templates), directory)
    return templates


def select_template(
    templates: Iterable[DunningTemplate],
    stage,
) -> Optional[DunningTemplate]:
    """Pick the template for *stage*: the active default, else any active one."""
    key = stage_key(stage)
    candidates = [t for t in templates if t.is_active and t.stage == key]
    for template in candidates:
        if template.is_default:
            return template
    return candidates[0] if candidates else None


# ---------------------------------------------------------------------------
# Module-level convenience functions
# ---------------------------------------------------------------------------

def render(
    template_string: str,
    context,
    helpers: Optional[HelperRegistry] = None,
    *,
    autoescape: bool = False,
) -> str:
    """Render one template string with a fresh engine."""
    return TemplateEngine(helpers).render(template_string, context, autoescape=autoescape)


def render_template(
    template: DunningTemplate,
    context,
    helpers: Optional[HelperRegistry] = None,
) -> RenderedEmail:
    """Render a stored template with a fresh engine."""
    return TemplateEngine(helpers).render_template(template, context)
