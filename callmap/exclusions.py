"""exclusions.py - Built-in rules for methods that are never hooked.

Each rule is a callable taking a ``MethodDescriptor`` and returning a short
reason string when the method must be skipped, or None. The hook applies the
rules after the configuration has selected a method, so configuration can
never re-enable an excluded category. Rules can be added without touching the
hook itself: pass a different ``exclusions`` sequence to ``Hook``.

Built-in rules:

    constructor       ``__init__`` and ``__new__``. The receiver is not yet
                      valid mid-construction, and capture code that allocates
                      an instrumented type would recurse.
    accessor          A function whose body, ignoring its docstring, only
                      reads (``return self.x``) or writes
                      (``self.x = value``) one attribute. Detected from the
                      AST of the definition, not from the name.
    special method    Dunders the interpreter and the display layer call
                      implicitly: display (``__repr__``, ``__str__``),
                      identity and comparison used by containers
                      (``__eq__``, ``__hash__``), attribute access, pickling
                      and finalisation. Dunders that carry application logic
                      (``__call__``, ``__getitem__``, ``__enter__`` ...) are
                      hooked like any other method.
"""

import ast
import inspect
import textwrap
from typing import TYPE_CHECKING, Callable, Optional, Sequence

if TYPE_CHECKING:
    from .hook import MethodDescriptor

ExclusionRule = Callable[["MethodDescriptor"], Optional[str]]

CONSTRUCTORS = frozenset({"__init__", "__new__"})

IMPLICIT_SPECIAL_METHODS = frozenset(
    {
        "__repr__",
        "__str__",
        "__format__",
        "__bytes__",
        "__hash__",
        "__eq__",
        "__ne__",
        "__bool__",
        "__del__",
        "__getattr__",
        "__getattribute__",
        "__setattr__",
        "__delattr__",
        "__dir__",
        "__sizeof__",
        "__reduce__",
        "__reduce_ex__",
        "__getstate__",
        "__setstate__",
        "__copy__",
        "__deepcopy__",
        "__init_subclass__",
        "__class_getitem__",
        "__subclasshook__",
        "__set_name__",
        "__instancecheck__",
        "__subclasscheck__",
    }
)


def constructor(descriptor: "MethodDescriptor") -> Optional[str]:
    if descriptor.name in CONSTRUCTORS:
        return "constructor"
    return None


def special_method(descriptor: "MethodDescriptor") -> Optional[str]:
    if descriptor.name in IMPLICIT_SPECIAL_METHODS:
        return "special method"
    return None


def accessor(descriptor: "MethodDescriptor") -> Optional[str]:
    if descriptor.is_static:
        return None
    if is_accessor_function(descriptor.function):
        return "accessor"
    return None


def _function_def(func: Callable) -> Optional[ast.FunctionDef]:
    try:
        source = textwrap.dedent(inspect.getsource(func))
        tree = ast.parse(source)
    except (OSError, TypeError, SyntaxError):
        return None
    if not tree.body or not isinstance(tree.body[0], ast.FunctionDef):
        return None
    return tree.body[0]


def _is_self_attribute(node: ast.AST, self_name: str) -> bool:
    return (
        isinstance(node, ast.Attribute)
        and isinstance(node.value, ast.Name)
        and node.value.id == self_name
    )


def is_accessor_function(func: Callable) -> bool:
    """Return True if ``func`` only gets or sets a single attribute of ``self``.

    A getter takes only ``self`` and its body is ``return self.<attr>``. A
    setter takes ``self`` and one value and its body is
    ``self.<attr> = <value>``. Functions whose source is unavailable are
    never treated as accessors.
    """
    node = _function_def(func)
    if node is None:
        return False
    args = node.args
    if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs:
        return False
    params = [a.arg for a in args.args]
    if not params:
        return False
    self_name = params[0]

    body = list(node.body)
    if (
        body
        and isinstance(body[0], ast.Expr)
        and isinstance(body[0].value, ast.Constant)
        and isinstance(body[0].value.value, str)
    ):
        body = body[1:]
    if len(body) != 1:
        return False
    stmt = body[0]

    if len(params) == 1 and isinstance(stmt, ast.Return):
        return stmt.value is not None and _is_self_attribute(stmt.value, self_name)

    if len(params) == 2:
        value_name = params[1]
        if isinstance(stmt, ast.Assign) and len(stmt.targets) == 1:
            target, value = stmt.targets[0], stmt.value
        elif isinstance(stmt, ast.AnnAssign) and stmt.value is not None:
            target, value = stmt.target, stmt.value
        else:
            return False
        return (
            _is_self_attribute(target, self_name)
            and isinstance(value, ast.Name)
            and value.id == value_name
        )
    return False


BUILTIN_EXCLUSIONS: Sequence[ExclusionRule] = (constructor, special_method, accessor)


def exclusion_reason(
    descriptor: "MethodDescriptor", rules: Sequence[ExclusionRule] = BUILTIN_EXCLUSIONS
) -> Optional[str]:
    """Return the reason of the first rule that excludes ``descriptor``, or None."""
    for rule in rules:
        reason = rule(descriptor)
        if reason:
            return reason
    return None
