"""
Expression language used by run-conditions, step conditions and `${{ }}` templates.

Supported syntax:
    'string'  42  true  false  null
    pipeline.ref  runner.os  env.NAME  secrets.NAME  steps.<id>.outputs.<key>
    ==  !=  &&  ||  !  ( )
    hashFiles('**/Cargo.lock')  startsWith(a, b)  endsWith(a, b)  contains(a, b)

Lookups that do not resolve evaluate to the empty string.
"""

import hashlib
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from controller.src.errors import PipelineDefinitionError
from controller.src.models.context import PipelineContext

TEMPLATE_RE = re.compile(r"\$\{\{(.*?)\}\}", re.S)

TOKEN_RE = re.compile(
    r"""
    (?P<string>'(?:[^']|'')*')
    | (?P<number>\d+(?:\.\d+)?)
    | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
    | (?P<name>[A-Za-z_][\w\-]*(?:\.[\w\-*]+)*)
    """,
    re.X,
)

class Scope:
    """Values visible to an expression."""

    def __init__(self, values: Dict[str, Any], workspace: Optional[Path] = None):
        self.values = values
        self.workspace = workspace

    def lookup(self, path: str) -> Any:
        current: Any = self.values
        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return ""
        return current

def build_scope(
    context: PipelineContext,
    workspace: Optional[Path] = None,
    steps: Optional[Dict[str, Dict[str, str]]] = None,
    env: Optional[Dict[str, str]] = None,
) -> Scope:
    """Build the scope for a run; `steps` maps step ids to their outputs."""
    values = {
        "pipeline": {
            "ref": context.ref,
            "branch": context.branch,
            "sha": context.commit_sha,
            "run_id": context.run_id,
            "event": context.event,
            "repository": context.repository,
        },
        "runner": {"os": context.runner_os},
        "env": {**context.env, **(env or {})},
        "secrets": {name: context.secret(name) for name in context.secrets},
        "steps": {
            step_id: {"outputs": dict(outputs)}
            for step_id, outputs in (steps or {}).items()
        },
    }
    return Scope(values, workspace)

def as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)

def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != ""
    return bool(value)

def hash_files(workspace: Optional[Path], *patterns: str) -> str:
    """sha256 over the sha256 of every file matching `patterns`, in path order."""
    for pattern in patterns:
        if not pattern or Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise PipelineDefinitionError(f"hashFiles pattern must be relative to the workspace: '{pattern}'")
    if workspace is None:
        return ""
    root = Path(workspace)
    matched = set()
    for pattern in patterns:
        for path in root.glob(pattern):
            if path.is_file():
                matched.add(path)
    if not matched:
        return ""

    digest = hashlib.sha256()
    for path in sorted(matched):
        digest.update(hashlib.sha256(path.read_bytes()).digest())
    return digest.hexdigest()

def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return as_text(needle) in [as_text(item) for item in haystack]
    return as_text(needle) in as_text(haystack)

FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "startsWith": lambda scope, a, b: as_text(a).startswith(as_text(b)),
    "endsWith": lambda scope, a, b: as_text(a).endswith(as_text(b)),
    "contains": lambda scope, a, b: _contains(a, b),
    "hashFiles": lambda scope, *patterns: hash_files(scope.workspace, *map(as_text, patterns)),
}

Node = Callable[[Scope], Any]

def _tokenize(source: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(source):
        if source[pos].isspace():
            pos += 1
            continue
        match = TOKEN_RE.match(source, pos)
        if not match:
            raise PipelineDefinitionError(
                f"Unexpected character {source[pos]!r} at {pos} in expression: {source}"
            )
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens

class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def error(self, message: str) -> PipelineDefinitionError:
        return PipelineDefinitionError(f"{message} in expression: {self.source}")

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, op: str) -> bool:
        token = self.peek()
        if token and token[0] == "op" and token[1] == op:
            self.pos += 1
            return True
        return False

    def expect(self, op: str):
        if not self.accept(op):
            raise self.error(f"Expected '{op}'")

    def parse(self) -> Node:
        if not self.tokens:
            raise self.error("Empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise self.error(f"Unexpected token '{self.peek()[1]}'")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            left, right = node, self.parse_and()
            node = lambda s, l=left, r=right: l(s) if truthy(l(s)) else r(s)
        return node

    def parse_and(self) -> Node:
        node = self.parse_unary()
        while self.accept("&&"):
            left, right = node, self.parse_unary()
            node = lambda s, l=left, r=right: r(s) if truthy(l(s)) else l(s)
        return node

    def parse_unary(self) -> Node:
        if self.accept("!"):
            operand = self.parse_unary()
            return lambda s: not truthy(operand(s))
        return self.parse_comparison()

    def parse_comparison(self) -> Node:
        left = self.parse_primary()
        if self.accept("=="):
            right = self.parse_primary()
            return lambda s: as_text(left(s)) == as_text(right(s))
        if self.accept("!="):
            right = self.parse_primary()
            return lambda s: as_text(left(s)) != as_text(right(s))
        return left

    def parse_primary(self) -> Node:
        token = self.peek()
        if token is None:
            raise self.error("Unexpected end")
        kind, text = token
        self.pos += 1

        if kind == "string":
            value = text[1:-1].replace("''", "'")
            return lambda s: value
        if kind == "number":
            number = float(text)
            return lambda s: number
        if kind == "op":
            if text == "(":
                node = self.parse_or()
                self.expect(")")
                return node
            raise self.error(f"Unexpected '{text}'")

        if text == "true":
            return lambda s: True
        if text == "false":
            return lambda s: False
        if text == "null":
            return lambda s: None

        if self.accept("("):
            return self.parse_call(text)
        return lambda s: s.lookup(text)

    def parse_call(self, name: str) -> Node:
        func = FUNCTIONS.get(name)
        if func is None:
            raise self.error(f"Unknown function '{name}'")
        args: List[Node] = []
        if not self.accept(")"):
            args.append(self.parse_or())
            while self.accept(","):
                args.append(self.parse_or())
            self.expect(")")
        return lambda s: func(s, *(arg(s) for arg in args))

@lru_cache(maxsize=512)
def compile_expression(source: str) -> Node:
    """Compile an expression; raises PipelineDefinitionError on bad syntax."""
    return _Parser(source.strip()).parse()

def _unwrap(source: str) -> str:
    stripped = source.strip()
    match = TEMPLATE_RE.fullmatch(stripped)
    return match.group(1) if match else stripped

def compile_condition(source: str) -> Callable[[Scope], bool]:
    """Compile an `if:` expression, bare or wrapped in `${{ }}`."""
    node = compile_expression(_unwrap(source))
    return lambda scope: truthy(node(scope))

def stage_condition(source: str) -> Callable[[PipelineContext], bool]:
    """Run-condition as a pure predicate over the pipeline context."""
    condition = compile_condition(source)
    return lambda context: condition(build_scope(context))

def validate_template(template: str):
    for match in TEMPLATE_RE.finditer(template):
        compile_expression(match.group(1))

def render(template: Any, scope: Scope) -> Any:
    """Substitute every `${{ expr }}` in strings, lists and dicts."""
    if isinstance(template, str):
        return TEMPLATE_RE.sub(
            lambda m: as_text(compile_expression(m.group(1))(scope)), template
        )
    if isinstance(template, list):
        return [render(item, scope) for item in template]
    if isinstance(template, dict):
        return {key: render(value, scope) for key, value in template.items()}
    return template
