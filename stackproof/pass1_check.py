"""stackproof Pass 1: Check.

Name resolution and type checking. Binds every identifier to a parameter,
local, function, contract, field or method; rejects cyclic contract layouts;
assigns each fixed-width integer expression its declared width; allocates a
frame slot for every parameter and local. If this pass completes, the AST is
fully typed and ready for pruning and emission.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from stackproof.ast_nodes import (
    Program, ContractDef, FunctionDef, TypeAnnotation,
    Statement, LetStmt, AssignStmt, ExprStmt, IfStmt, WhileStmt, ForStmt,
    ReturnStmt, BreakStmt, ContinueStmt,
    Expr, IntLiteral, StringLiteral, BoolLiteral, ArrayLiteral, Identifier,
    ThisExpr, BinaryOp, UnaryOp, FunctionCall, MethodCall, FieldAccess, IndexExpr,
)
from stackproof.types import (
    Type, UIntType, ArrayType, ContractType,
    STRING, BOOLEAN, VOID, ERROR, U32, BUILTIN_TYPES,
    FunctionSignature, ContractInfo, TypeEnvironment, is_uint,
)
from stackproof.errors import (
    Diagnostic, CompileError, SourceLocation, syntax_error, unresolved_reference,
    type_mismatch, arity_mismatch, cyclic_type, duplicate_definition,
)

logger = logging.getLogger(__name__)

BUILTIN_FUNCTIONS = ("log", "checkAuth", "requireAuth", "selfdestruct")
WRAPPING_METHODS = {"wrappingAdd": "+", "wrappingSub": "-", "wrappingMul": "*"}
ARITHMETIC_OPS = ("+", "-", "*", "/", "%")
COMPARISON_OPS = ("<", "<=", ">", ">=")
EQUALITY_OPS = ("==", "!=")
LOGICAL_OPS = ("&&", "||")


def is_ctx_access(expr: Expr) -> bool:
    """True for ``ctx.<field>`` where ``ctx`` is the built-in caller context, not a local."""
    return (
        isinstance(expr, FieldAccess)
        and isinstance(expr.obj, Identifier)
        and expr.obj.name == "ctx"
        and expr.obj.slot is None
    )


def place_root(expr: Expr) -> Expr:
    """Strip field and index accesses down to the variable or ``this`` they start from."""
    while isinstance(expr, (FieldAccess, IndexExpr)):
        expr = expr.obj
    return expr


def contract_ref(t: Type) -> Optional[str]:
    while isinstance(t, ArrayType):
        t = t.element
    if isinstance(t, ContractType):
        return t.name
    return None


@dataclass
class TypedProgram:
    """A checked program: the annotated AST plus its resolved signatures."""
    program: Program
    contracts: dict[str, ContractInfo] = field(default_factory=dict)
    signatures: dict[str, FunctionSignature] = field(default_factory=dict)
    definitions: dict[str, FunctionDef] = field(default_factory=dict)

    def lookup(self, contract: Optional[str], name: str) -> Optional[FunctionDef]:
        key = f"{contract}.{name}" if contract else name
        return self.definitions.get(key)


@dataclass
class _FunctionScope:
    definition: FunctionDef
    contract: Optional[ContractInfo]
    return_type: Type
    next_slot: int = 0
    loop_depth: int = 0

    def allocate(self) -> int:
        slot = self.next_slot
        self.next_slot += 1
        return slot


class TypeChecker:
    """Resolves names and type checks a contract-language program."""

    def __init__(self):
        self.errors: list[Diagnostic] = []
        self.contracts: dict[str, ContractInfo] = {}
        self.signatures: dict[str, FunctionSignature] = {}
        self.definitions: dict[str, FunctionDef] = {}
        self._field_locations: dict[tuple[str, str], Optional[SourceLocation]] = {}
        self._scope: Optional[_FunctionScope] = None

    def check_program(self, program: Program) -> list[Diagnostic]:
        self._register_declarations(program)
        self._check_cycles(program.contracts)
        for qualified_name, definition in self.definitions.items():
            self._check_function(definition, self.signatures[qualified_name])
        return self.errors

    # -------------------------------------------------------------------
    # Declarations
    # -------------------------------------------------------------------

    def _register_declarations(self, program: Program) -> None:
        contracts: list[ContractDef] = []
        functions: list[FunctionDef] = []
        for decl in program.declarations:
            if isinstance(decl, ContractDef):
                if decl.name in self.contracts or decl.name in BUILTIN_TYPES:
                    self.errors.append(duplicate_definition(decl.name, decl.location))
                    continue
                self.contracts[decl.name] = ContractInfo(name=decl.name)
                contracts.append(decl)
            else:
                if decl.name in self.definitions or decl.name in BUILTIN_FUNCTIONS:
                    self.errors.append(duplicate_definition(decl.name, decl.location))
                    continue
                self.definitions[decl.name] = decl
                functions.append(decl)

        # Names are known now, so field and parameter types can refer to any contract.
        for contract in contracts:
            self._register_contract(contract)
        for func in functions:
            self.signatures[func.name] = self._signature(func)

    def _register_contract(self, contract: ContractDef) -> None:
        info = self.contracts[contract.name]
        for f in contract.fields:
            if info.field_type(f.name) is not None:
                self.errors.append(duplicate_definition(f"{contract.name}.{f.name}", f.location))
                continue
            info.fields.append((f.name, self._resolve_annotation(f.type_annotation)))
            self._field_locations[(contract.name, f.name)] = f.location

        if contract.constructor is not None:
            sig = self._signature(contract.constructor)
            info.constructor = sig
            qualified = contract.constructor.qualified_name
            self.signatures[qualified] = sig
            self.definitions[qualified] = contract.constructor

        for method in contract.methods:
            if method.name in info.methods:
                self.errors.append(duplicate_definition(method.qualified_name, method.location))
                continue
            sig = self._signature(method)
            info.methods[method.name] = sig
            self.signatures[method.qualified_name] = sig
            self.definitions[method.qualified_name] = method
        self._expand_decorators(contract, info)

    def _expand_decorators(self, contract: ContractDef, info: ContractInfo) -> None:
        """Prepend the authorization checks ``@call`` and ``@read`` stand for to every method.

        ``@call(a, b)`` becomes ``requireAuth(ctx.publicKey == this.a || ctx.publicKey == this.b);``
        and each ``@read`` field then adds ``checkAuth(ctx.publicKey == this.f);``, in field order.
        """
        read_fields = [
            f for f in contract.fields
            if any(d.name == "read" for d in f.decorators) and self._key_field(info, f.name, f.location)
        ]
        for method in contract.methods:
            checks: list[Statement] = []
            for d in method.decorators:
                if d.name != "call" or not d.arguments:
                    continue
                if not all([self._key_field(info, arg, d.location) for arg in d.arguments]):
                    continue
                condition = _caller_is(d.arguments[0], d.location)
                for arg in d.arguments[1:]:
                    condition = BinaryOp(op="||", left=condition, right=_caller_is(arg, d.location), location=d.location)
                checks.append(_auth_statement("requireAuth", condition, d.location))
            for f in read_fields:
                checks.append(_auth_statement("checkAuth", _caller_is(f.name, f.location), f.location))
            method.body[:0] = checks

    def _key_field(self, info: ContractInfo, name: str, location: Optional[SourceLocation]) -> bool:
        """A decorator argument must name a string field of the contract."""
        t = info.field_type(name)
        if t is None:
            self.errors.append(unresolved_reference(f"{info.name}.{name}", location, what="field"))
            return False
        if t != STRING:
            self.errors.append(type_mismatch(str(STRING), str(t), location, f"key field '{name}'"))
            return False
        return True

    def _signature(self, func: FunctionDef) -> FunctionSignature:
        return FunctionSignature(
            name=func.name,
            param_types=[self._resolve_annotation(p.type_annotation) for p in func.params],
            return_type=self._resolve_annotation(func.return_type) if func.return_type else VOID,
            contract=func.contract,
        )

    def _resolve_annotation(self, ann: TypeAnnotation) -> Type:
        if ann.name in BUILTIN_TYPES:
            t: Type = BUILTIN_TYPES[ann.name]
        elif ann.name in self.contracts:
            t = ContractType(ann.name)
        else:
            self.errors.append(unresolved_reference(ann.name, ann.location, what="type"))
            return ERROR
        for _ in range(ann.array_depth):
            t = ArrayType(t)
        return t

    def _check_cycles(self, contracts: list[ContractDef]) -> None:
        """Contract field references must form a DAG, arrays included."""
        state: dict[str, str] = {}
        path: list[str] = []

        def visit(name: str) -> None:
            state[name] = "active"
            path.append(name)
            for field_name, field_type in self.contracts[name].fields:
                ref = contract_ref(field_type)
                if ref is None:
                    continue
                if state.get(ref) == "active":
                    cycle = path[path.index(ref):] + [ref]
                    self.errors.append(cyclic_type(cycle, self._field_locations.get((name, field_name))))
                elif ref not in state:
                    visit(ref)
            path.pop()
            state[name] = "done"

        for contract in contracts:
            if contract.name not in state and contract.name in self.contracts:
                visit(contract.name)

    # -------------------------------------------------------------------
    # Function bodies
    # -------------------------------------------------------------------

    def _check_function(self, func: FunctionDef, sig: FunctionSignature) -> None:
        contract = self.contracts.get(func.contract) if func.contract else None
        self._scope = _FunctionScope(definition=func, contract=contract, return_type=sig.return_type)
        env = TypeEnvironment()
        for param, param_type in zip(func.params, sig.param_types):
            slot = self._scope.allocate()
            if env.defines(param.name):
                self.errors.append(duplicate_definition(param.name, param.location))
                continue
            env.define_variable(param.name, param_type, slot)

        self._check_block(func.body, env)
        func.local_count = self._scope.next_slot

        if sig.return_type not in (VOID, ERROR) and not _always_returns(func.body):
            self.errors.append(type_mismatch(
                str(sig.return_type), "void", func.location,
                context=f"'{func.qualified_name}' (not every path returns a value)",
            ))
        self._scope = None

    def _check_block(self, stmts: list[Statement], env: TypeEnvironment) -> None:
        child = env.child_scope()
        for stmt in stmts:
            self._check_statement(stmt, child)

    # -------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------

    def _check_statement(self, stmt: Statement, env: TypeEnvironment) -> None:
        if isinstance(stmt, LetStmt):
            self._check_let(stmt, env)
        elif isinstance(stmt, AssignStmt):
            self._check_assign(stmt, env)
        elif isinstance(stmt, ExprStmt):
            self._check_expr(stmt.expr, env)
        elif isinstance(stmt, IfStmt):
            self._check_condition(stmt.condition, env)
            self._check_block(stmt.then_body, env)
            self._check_block(stmt.else_body, env)
        elif isinstance(stmt, WhileStmt):
            self._check_condition(stmt.condition, env)
            self._check_loop_body(stmt.body, env)
        elif isinstance(stmt, ForStmt):
            self._check_for(stmt, env)
        elif isinstance(stmt, ReturnStmt):
            self._check_return(stmt, env)
        elif isinstance(stmt, (BreakStmt, ContinueStmt)):
            if self._scope.loop_depth == 0:
                keyword = "break" if isinstance(stmt, BreakStmt) else "continue"
                self.errors.append(syntax_error(f"'{keyword}' outside of a loop", stmt.location))

    def _check_let(self, stmt: LetStmt, env: TypeEnvironment) -> None:
        declared: Optional[Type] = None
        if stmt.type_annotation:
            declared = self._resolve_annotation(stmt.type_annotation)
        value_type = self._check_expr(stmt.value, env, expected=declared)
        if declared is None:
            if value_type == VOID:
                self.errors.append(type_mismatch("a value", "void", stmt.value.location, context=f"let {stmt.name}"))
                value_type = ERROR
            declared = value_type
        else:
            self._expect(declared, value_type, stmt.value.location, f"let {stmt.name}")

        slot = self._scope.allocate()
        if env.defines(stmt.name):
            self.errors.append(duplicate_definition(stmt.name, stmt.location))
        stmt.slot = slot
        env.define_variable(stmt.name, declared, slot)

    def _check_assign(self, stmt: AssignStmt, env: TypeEnvironment) -> None:
        target_type = self._check_place(stmt.target, env)
        value_type = self._check_expr(stmt.value, env, expected=target_type)
        if stmt.op == "=":
            self._expect(target_type, value_type, stmt.value.location, "assignment")
        elif stmt.op == "+=" and target_type == STRING:
            self._expect(STRING, value_type, stmt.value.location, "'+='")
        elif is_uint(target_type):
            self._expect(target_type, value_type, stmt.value.location, f"'{stmt.op}'")
        elif target_type != ERROR:
            self.errors.append(type_mismatch("unsigned integer", str(target_type), stmt.location, f"'{stmt.op}'"))

    def _check_place(self, target: Expr, env: TypeEnvironment) -> Type:
        root = place_root(target)
        if isinstance(root, ThisExpr) and root is not target:
            pass
        elif isinstance(root, Identifier) and env.lookup_variable(root.name) is not None:
            pass
        elif isinstance(root, Identifier) and root.name != "ctx":
            self.errors.append(unresolved_reference(root.name, root.location))
            return ERROR
        else:
            self.errors.append(syntax_error("Invalid assignment target", target.location))
            return ERROR
        target_type = self._check_expr(target, env)
        if isinstance(target, FieldAccess) and target.field_name == "length":
            owner = target.obj.ty
            if isinstance(owner, ArrayType) or owner == STRING:
                self.errors.append(syntax_error("'length' is read-only", target.location))
                return ERROR
        return target_type

    def _check_condition(self, cond: Expr, env: TypeEnvironment) -> None:
        t = self._check_expr(cond, env, expected=BOOLEAN)
        self._expect(BOOLEAN, t, cond.location, "condition")

    def _check_loop_body(self, body: list[Statement], env: TypeEnvironment) -> None:
        self._scope.loop_depth += 1
        self._check_block(body, env)
        self._scope.loop_depth -= 1

    def _check_for(self, stmt: ForStmt, env: TypeEnvironment) -> None:
        scope = env.child_scope()
        if stmt.init is not None:
            self._check_statement(stmt.init, scope)
        if stmt.condition is not None:
            self._check_condition(stmt.condition, scope)
        self._check_loop_body(stmt.body, scope)
        if stmt.step is not None:
            self._check_statement(stmt.step, scope)

    def _check_return(self, stmt: ReturnStmt, env: TypeEnvironment) -> None:
        expected = self._scope.return_type
        if stmt.value is None:
            if expected not in (VOID, ERROR):
                self.errors.append(type_mismatch(str(expected), "void", stmt.location, "return"))
            return
        actual = self._check_expr(stmt.value, env, expected=expected)
        if expected == VOID:
            self.errors.append(type_mismatch("void", str(actual), stmt.value.location, "return"))
            return
        self._expect(expected, actual, stmt.value.location, "return")

    # -------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------

    def _expect(self, expected: Type, actual: Type, location: Optional[SourceLocation], context: str) -> None:
        if expected == ERROR or actual == ERROR:
            return
        if not expected.is_assignable_from(actual):
            self.errors.append(type_mismatch(str(expected), str(actual), location, context))

    def _check_expr(self, expr: Expr, env: TypeEnvironment, expected: Optional[Type] = None) -> Type:
        t = self._infer(expr, env, expected)
        expr.ty = t
        return t

    def _infer(self, expr: Expr, env: TypeEnvironment, expected: Optional[Type]) -> Type:
        if isinstance(expr, IntLiteral):
            target = expected if isinstance(expected, UIntType) else U32
            if not target.fits(expr.value):
                self.errors.append(type_mismatch(str(target), f"integer literal {expr.value}", expr.location))
            return target
        if isinstance(expr, StringLiteral):
            return STRING
        if isinstance(expr, BoolLiteral):
            return BOOLEAN
        if isinstance(expr, ArrayLiteral):
            return self._infer_array(expr, env, expected)
        if isinstance(expr, Identifier):
            found = env.lookup_variable(expr.name)
            if found is None:
                if expr.name in self.definitions:
                    self.errors.append(type_mismatch("a value", f"function '{expr.name}'", expr.location))
                else:
                    self.errors.append(unresolved_reference(expr.name, expr.location))
                return ERROR
            expr.slot = found[1]
            return found[0]
        if isinstance(expr, ThisExpr):
            if self._scope.contract is None:
                self.errors.append(unresolved_reference("this", expr.location, what="keyword"))
                return ERROR
            return ContractType(self._scope.contract.name)
        if isinstance(expr, FieldAccess):
            return self._infer_field(expr, env)
        if isinstance(expr, IndexExpr):
            obj_type = self._check_expr(expr.obj, env)
            index_type = self._check_expr(expr.index, env, expected=U32)
            if index_type != ERROR and not is_uint(index_type):
                self.errors.append(type_mismatch("unsigned integer", str(index_type), expr.index.location, "index"))
            if obj_type == ERROR:
                return ERROR
            if not isinstance(obj_type, ArrayType):
                self.errors.append(type_mismatch("array", str(obj_type), expr.location, "index"))
                return ERROR
            return obj_type.element
        if isinstance(expr, UnaryOp):
            t = self._check_expr(expr.operand, env, expected=BOOLEAN)
            self._expect(BOOLEAN, t, expr.operand.location, "'!'")
            return BOOLEAN
        if isinstance(expr, BinaryOp):
            return self._infer_binary(expr, env, expected)
        if isinstance(expr, FunctionCall):
            return self._infer_call(expr, env)
        if isinstance(expr, MethodCall):
            return self._infer_method_call(expr, env, expected)
        self.errors.append(syntax_error(f"Unsupported expression {type(expr).__name__}", expr.location))
        return ERROR

    def _infer_array(self, expr: ArrayLiteral, env: TypeEnvironment, expected: Optional[Type]) -> Type:
        elem_expected = expected.element if isinstance(expected, ArrayType) else None
        if not expr.elements:
            if elem_expected is None:
                self.errors.append(type_mismatch("annotated array type", "[]", expr.location))
                return ERROR
            return ArrayType(elem_expected)
        first = self._check_expr(expr.elements[0], env, expected=elem_expected)
        elem_type = elem_expected or first
        if elem_type == VOID:
            self.errors.append(type_mismatch("a value", "void", expr.elements[0].location, "array element"))
            return ERROR
        if elem_expected is not None:
            self._expect(elem_type, first, expr.elements[0].location, "array element")
        for element in expr.elements[1:]:
            t = self._check_expr(element, env, expected=elem_type)
            self._expect(elem_type, t, element.location, "array element")
        return ArrayType(elem_type)

    def _infer_field(self, expr: FieldAccess, env: TypeEnvironment) -> Type:
        if isinstance(expr.obj, Identifier) and expr.obj.name == "ctx" and env.lookup_variable("ctx") is None:
            if expr.field_name == "publicKey":
                return STRING
            self.errors.append(unresolved_reference(f"ctx.{expr.field_name}", expr.location, what="field"))
            return ERROR
        obj_type = self._check_expr(expr.obj, env)
        if obj_type == ERROR:
            return ERROR
        if expr.field_name == "length" and (isinstance(obj_type, ArrayType) or obj_type == STRING):
            return U32
        if isinstance(obj_type, ContractType):
            field_type = self.contracts[obj_type.name].field_type(expr.field_name)
            if field_type is not None:
                return field_type
        self.errors.append(unresolved_reference(f"{obj_type}.{expr.field_name}", expr.location, what="field"))
        return ERROR

    def _check_operands(
        self, left: Expr, right: Expr, env: TypeEnvironment, hint: Optional[Type],
    ) -> tuple[Type, Type]:
        # A literal on the left takes its width from the right operand.
        if isinstance(left, IntLiteral) and not isinstance(right, IntLiteral):
            rt = self._check_expr(right, env, expected=hint)
            lt = self._check_expr(left, env, expected=rt if is_uint(rt) else hint)
            return lt, rt
        lt = self._check_expr(left, env, expected=hint)
        rt = self._check_expr(right, env, expected=lt if lt != ERROR else hint)
        return lt, rt

    def _infer_binary(self, expr: BinaryOp, env: TypeEnvironment, expected: Optional[Type]) -> Type:
        op = expr.op
        if op in LOGICAL_OPS:
            lt = self._check_expr(expr.left, env, expected=BOOLEAN)
            rt = self._check_expr(expr.right, env, expected=BOOLEAN)
            self._expect(BOOLEAN, lt, expr.left.location, f"'{op}'")
            self._expect(BOOLEAN, rt, expr.right.location, f"'{op}'")
            return BOOLEAN

        hint = expected if op in ARITHMETIC_OPS and is_uint(expected) else None
        lt, rt = self._check_operands(expr.left, expr.right, env, hint)
        result = BOOLEAN if op in COMPARISON_OPS or op in EQUALITY_OPS else ERROR
        if lt == ERROR or rt == ERROR:
            return result

        if op == "+" and lt == STRING:
            self._expect(STRING, rt, expr.right.location, "'+'")
            return STRING
        if op in ARITHMETIC_OPS or op in COMPARISON_OPS:
            if not is_uint(lt):
                self.errors.append(type_mismatch("unsigned integer", str(lt), expr.left.location, f"'{op}'"))
                return result
            self._expect(lt, rt, expr.right.location, f"'{op}'")
            return lt if op in ARITHMETIC_OPS else BOOLEAN
        if lt == VOID:
            self.errors.append(type_mismatch("a value", "void", expr.left.location, f"'{op}'"))
            return BOOLEAN
        self._expect(lt, rt, expr.right.location, f"'{op}'")
        return BOOLEAN

    def _check_call_args(
        self,
        name: str,
        param_types: list[Type],
        args: list[Expr],
        env: TypeEnvironment,
        location: Optional[SourceLocation],
    ) -> None:
        if len(args) != len(param_types):
            self.errors.append(arity_mismatch(name, len(param_types), len(args), location))
        for i, arg in enumerate(args):
            expected = param_types[i] if i < len(param_types) else None
            actual = self._check_expr(arg, env, expected=expected)
            if expected is not None:
                self._expect(expected, actual, arg.location, f"argument {i + 1} of '{name}'")

    def _infer_call(self, expr: FunctionCall, env: TypeEnvironment) -> Type:
        name = expr.name
        if name == "log":
            if len(expr.args) != 1:
                self.errors.append(arity_mismatch(name, 1, len(expr.args), expr.location))
            for arg in expr.args:
                if self._check_expr(arg, env) == VOID:
                    self.errors.append(type_mismatch("a value", "void", arg.location, "log"))
            return VOID
        if name in ("checkAuth", "requireAuth"):
            self._check_call_args(name, [BOOLEAN], expr.args, env, expr.location)
            return BOOLEAN if name == "checkAuth" else VOID
        if name == "selfdestruct":
            self._check_call_args(name, [], expr.args, env, expr.location)
            if self._scope.contract is None:
                self.errors.append(unresolved_reference(name, expr.location, what="function"))
            return VOID

        sig = self.signatures.get(name)
        if sig is None:
            self.errors.append(unresolved_reference(name, expr.location, what="function"))
            for arg in expr.args:
                self._check_expr(arg, env)
            return ERROR
        self._check_call_args(name, sig.param_types, expr.args, env, expr.location)
        return sig.return_type

    def _infer_method_call(self, expr: MethodCall, env: TypeEnvironment, expected: Optional[Type]) -> Type:
        name = expr.method_name
        if isinstance(expr.obj, ThisExpr):
            obj_type = self._check_expr(expr.obj, env)
            sig = None
            if isinstance(obj_type, ContractType):
                sig = self.contracts[obj_type.name].methods.get(name)
                if sig is None:
                    self.errors.append(unresolved_reference(f"{obj_type}.{name}", expr.location, what="method"))
            if sig is None:
                for arg in expr.args:
                    self._check_expr(arg, env)
                return ERROR
            self._check_call_args(f"{obj_type}.{name}", sig.param_types, expr.args, env, expr.location)
            return sig.return_type

        hint = expected if isinstance(expr.obj, IntLiteral) and is_uint(expected) else None
        obj_type = self._check_expr(expr.obj, env, expected=hint)
        if obj_type != ERROR:
            if name in WRAPPING_METHODS:
                if not is_uint(obj_type):
                    self.errors.append(type_mismatch("unsigned integer", str(obj_type), expr.obj.location, name))
                    obj_type = ERROR
                self._check_call_args(name, [obj_type], expr.args, env, expr.location)
                return obj_type
            if name == "push" and isinstance(obj_type, ArrayType):
                self._check_call_args(name, [obj_type.element], expr.args, env, expr.location)
                if not _is_place(expr.obj):
                    self.errors.append(type_mismatch("array variable or field", "temporary array", expr.obj.location, "push"))
                return VOID
            self.errors.append(unresolved_reference(f"{obj_type}.{name}", expr.location, what="method"))
        for arg in expr.args:
            self._check_expr(arg, env)
        return ERROR


def _caller_is(field_name: str, location: Optional[SourceLocation]) -> Expr:
    """``ctx.publicKey == this.<field_name>``"""
    return BinaryOp(
        op="==",
        left=FieldAccess(obj=Identifier(name="ctx", location=location), field_name="publicKey", location=location),
        right=FieldAccess(obj=ThisExpr(location=location), field_name=field_name, location=location),
        location=location,
    )


def _auth_statement(name: str, condition: Expr, location: Optional[SourceLocation]) -> Statement:
    return ExprStmt(expr=FunctionCall(name=name, args=[condition], location=location), location=location)


def _is_place(expr: Expr) -> bool:
    root = place_root(expr)
    if isinstance(root, ThisExpr):
        return root is not expr
    return isinstance(root, Identifier) and root.slot is not None


def _always_returns(stmts: list[Statement]) -> bool:
    for stmt in stmts:
        if isinstance(stmt, ReturnStmt):
            return True
        if isinstance(stmt, IfStmt) and _always_returns(stmt.then_body) and _always_returns(stmt.else_body):
            return True
    return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def check(program: Program, source: Optional[str] = None) -> TypedProgram:
    """Run Pass 1. Raises CompileError carrying every diagnostic found."""
    checker = TypeChecker()
    errors = checker.check_program(program)
    if errors:
        raise CompileError(errors, source)
    logger.debug(
        "checked %d contract(s), %d function(s)",
        len(checker.contracts), len(checker.definitions),
    )
    return TypedProgram(
        program=program,
        contracts=checker.contracts,
        signatures=checker.signatures,
        definitions=checker.definitions,
    )
