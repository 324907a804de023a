# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Textual front end: Go-flavoured source -> program model.

The grammar lives in `grammar.lark` next to this file and is parsed with a
lark LALR parser. Statement terminators are inserted by `TerminatorInserter`
the way Go inserts semicolons: a newline ends a statement when the last token
on the line can end one, except directly inside `(...)` or `[...]`.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Union

from lark import Lark, Token, Tree
from lark.exceptions import UnexpectedInput

from heapcheck.core.errors import HeapcheckError
from heapcheck.core.span import Span
from heapcheck.model import nodes as M
from heapcheck.model.nodes import TypeTag

_GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")
_GRAMMAR_SRC = _GRAMMAR_PATH.read_text()

_TYPE_NAMES = {
	"int": TypeTag.PRIMITIVE,
	"int8": TypeTag.PRIMITIVE,
	"int16": TypeTag.PRIMITIVE,
	"int32": TypeTag.PRIMITIVE,
	"int64": TypeTag.PRIMITIVE,
	"uint": TypeTag.PRIMITIVE,
	"uint8": TypeTag.PRIMITIVE,
	"uint16": TypeTag.PRIMITIVE,
	"uint32": TypeTag.PRIMITIVE,
	"uint64": TypeTag.PRIMITIVE,
	"uintptr": TypeTag.PRIMITIVE,
	"byte": TypeTag.PRIMITIVE,
	"rune": TypeTag.PRIMITIVE,
	"float32": TypeTag.PRIMITIVE,
	"float64": TypeTag.PRIMITIVE,
	"bool": TypeTag.PRIMITIVE,
	"string": TypeTag.STRING,
	"any": TypeTag.DYNAMIC,
	"error": TypeTag.DYNAMIC,
}

_BINARY = {
	"add": M.BinaryOp.ADD,
	"sub": M.BinaryOp.SUB,
	"mul": M.BinaryOp.MUL,
	"div": M.BinaryOp.DIV,
	"mod": M.BinaryOp.MOD,
	"eq": M.BinaryOp.EQ,
	"ne": M.BinaryOp.NE,
	"lt": M.BinaryOp.LT,
	"le": M.BinaryOp.LE,
	"gt": M.BinaryOp.GT,
	"ge": M.BinaryOp.GE,
	"and_": M.BinaryOp.AND,
	"or_": M.BinaryOp.OR,
}


class ParseError(HeapcheckError):
	"""Source text that is not a well-formed model."""

	def __init__(self, message: str, span: Optional[Span] = None) -> None:
		super().__init__("parse-error", message, span or Span())

	@classmethod
	def from_lark(cls, exc: UnexpectedInput, file: Optional[str]) -> "ParseError":
		line = getattr(exc, "line", None)
		column = getattr(exc, "column", None)
		if line is None or line < 1:
			line = column = None
		span = Span(file=file, line=line, column=column)
		token = getattr(exc, "token", None)
		if token is not None:
			if token.type == "_TERMINATOR":
				text = "newline"
			elif token.type == "$END":
				text = "end of input"
			else:
				text = repr(str(token))
			message = f"syntax error: unexpected {text}"
		else:
			char = getattr(exc, "char", None)
			message = f"syntax error: unexpected character {char!r}" if char else "syntax error"
		return cls(message, span)


class TerminatorInserter:
	always_accept = ("NEWLINE", "SEMI")

	TERMINABLE = {
		"NAME",
		"NUMBER",
		"STRING",
		"TRUE",
		"FALSE",
		"RPAR",
		"RSQB",
		"RBRACE",
		"RETURN",
		"INC",
	}

	OPEN = {"LPAR": "RPAR", "LSQB": "RSQB", "LBRACE": "RBRACE"}

	def __init__(self) -> None:
		self._reset()

	def _reset(self) -> None:
		self.stack: List[str] = []
		self.can_terminate = False
		self.terminated = True

	def process(self, stream):
		self._reset()
		for token in stream:
			ttype = token.type
			if ttype == "NEWLINE":
				if self._should_emit_terminator():
					yield Token.new_borrow_pos("_TERMINATOR", token.value, token)
					self.can_terminate = False
					self.terminated = True
				continue
			if ttype == "SEMI":
				if not self.terminated:
					yield Token.new_borrow_pos("_TERMINATOR", token.value, token)
				self.can_terminate = False
				self.terminated = True
				continue
			yield token
			self._update_depth(ttype)
			self.can_terminate = ttype in self.TERMINABLE
			self.terminated = False

	def _update_depth(self, ttype: str) -> None:
		if ttype in self.OPEN:
			self.stack.append(ttype)
		elif self.stack and self.OPEN[self.stack[-1]] == ttype:
			self.stack.pop()

	def _should_emit_terminator(self) -> bool:
		# Newlines inside a closure body count even within call parentheses.
		inside_group = bool(self.stack) and self.stack[-1] != "LBRACE"
		return self.can_terminate and not inside_group


_PARSER = Lark(
	_GRAMMAR_SRC,
	parser="lalr",
	start="program",
	propagate_positions=True,
	maybe_placeholders=False,
	postlex=TerminatorInserter(),
)


def parse_source(text: str, file: Optional[str] = None) -> M.Program:
	"""Parse source text into a `Program`; raises `ParseError`."""
	try:
		tree = _PARSER.parse(text)
	except UnexpectedInput as exc:
		raise ParseError.from_lark(exc, file) from exc
	return _ModelBuilder(file).program(tree)


def parse_file(path: Union[str, Path]) -> M.Program:
	path = Path(path)
	return parse_source(path.read_text(), file=str(path))


class _ModelBuilder:
	def __init__(self, file: Optional[str]) -> None:
		self.file = file

	def _loc(self, node: Union[Tree, Token]) -> Span:
		if isinstance(node, Token):
			return Span(file=self.file, line=node.line, column=node.column, end_line=node.end_line, end_column=node.end_column)
		meta = node.meta
		if getattr(meta, "empty", True):
			return Span(file=self.file)
		return Span(file=self.file, line=meta.line, column=meta.column, end_line=meta.end_line, end_column=meta.end_column)

	def _error(self, message: str, node: Union[Tree, Token]) -> ParseError:
		return ParseError(message, self._loc(node))

	# ---------------------------------------------------------- declarations

	def program(self, tree: Tree) -> M.Program:
		prog = M.Program(file=self.file)
		for child in _trees(tree):
			kind = _name(child)
			if kind == "func_decl":
				prog.functions.append(self._func_decl(child))
			elif kind == "extern_decl":
				prog.externs.append(self._extern_decl(child))
			elif kind == "var_decl":
				prog.globals.append(self._var_decl(child))
		return prog

	def _signature(self, tree: Tree):
		params: List[M.Param] = []
		results: List[M.Result] = []
		for child in _trees(tree):
			kind = _name(child)
			if kind == "params":
				params = [self._param(p) for p in _trees(child)]
			elif kind == "single_result":
				results = [M.Result(tag=self._type(_trees(child)[0]), loc=self._loc(child))]
			elif kind == "result_list":
				results = [self._result_item(r) for r in _trees(child)]
		return params, results

	def _func_decl(self, tree: Tree) -> M.FunctionDecl:
		name = _tokens(tree, "NAME")[0]
		params, results = self._signature(tree)
		body = self._block(_child(tree, "block"))
		return M.FunctionDecl(name=str(name), params=params, results=results, body=body, loc=self._loc(tree))

	def _extern_decl(self, tree: Tree) -> M.ExternDecl:
		name = _tokens(tree, "NAME")[0]
		params, results = self._signature(tree)
		return M.ExternDecl(name=str(name), params=params, results=results, loc=self._loc(tree))

	def _var_decl(self, tree: Tree) -> M.Let:
		name = _tokens(tree, "NAME")[0]
		subtrees = _trees(tree)
		tag: Optional[TypeTag] = None
		value: Optional[M.Expr] = None
		if subtrees and _name(subtrees[0]).endswith("_type"):
			tag = self._type(subtrees[0])
			subtrees = subtrees[1:]
		if subtrees:
			value = self._expr(subtrees[0])
		return M.Let(name=str(name), value=value, tag=tag, loc=self._loc(tree))

	def _param(self, tree: Tree) -> M.Param:
		name = _tokens(tree, "NAME")[0]
		return M.Param(name=str(name), tag=self._type(_trees(tree)[0]), loc=self._loc(tree))

	def _result_item(self, tree: Tree) -> M.Result:
		tag = self._type(_trees(tree)[0])
		if _name(tree) == "named_result":
			return M.Result(tag=tag, name=str(_tokens(tree, "NAME")[0]), loc=self._loc(tree))
		return M.Result(tag=tag, loc=self._loc(tree))

	def _type(self, tree: Tree) -> TypeTag:
		kind = _name(tree)
		if kind == "ptr_type":
			return TypeTag.POINTER
		if kind == "seq_type":
			return TypeTag.SEQUENCE
		if kind == "func_type":
			return TypeTag.FUNCTION
		name = str(tree.children[0])
		tag = _TYPE_NAMES.get(name)
		if tag is None:
			raise self._error(f"unknown type {name}", tree)
		return tag

	# ------------------------------------------------------------ statements

	def _block(self, tree: Tree) -> List[M.Stmt]:
		return [self._stmt(child) for child in _trees(tree)]

	def _stmt(self, tree: Tree) -> M.Stmt:
		kind = _name(tree)
		loc = self._loc(tree)
		if kind == "let_stmt":
			name = tree.children[0]
			return M.Let(name=str(name), value=self._expr(tree.children[1]), loc=loc)
		if kind == "multi_let":
			names = _tokens(tree, "NAME")
			bindings = [M.Binding(name=str(n), loc=self._loc(n)) for n in names]
			return M.MultiLet(bindings=bindings, value=self._expr(_trees(tree)[-1]), loc=loc)
		if kind == "var_decl":
			return self._var_decl(tree)
		if kind == "assign":
			return M.Assign(target=str(tree.children[0]), value=self._expr(tree.children[1]), loc=loc)
		if kind == "store":
			pointer, value = _trees(tree)
			return M.Store(pointer=self._expr(pointer), value=self._expr(value), loc=loc)
		if kind == "inc":
			name = str(tree.children[0])
			return M.Assign(
				target=name,
				value=M.BinOp(M.BinaryOp.ADD, M.Var(name, loc=loc), M.Lit(1, loc=loc), loc=loc),
				loc=loc,
			)
		if kind == "return_stmt":
			return M.Return(values=[self._expr(v) for v in _trees(tree)], loc=loc)
		if kind == "if_stmt":
			return self._if(tree)
		if kind in ("counting_loop", "range_loop"):
			return self._loop(tree)
		if kind == "go_stmt":
			call = self._expr(tree.children[0])
			if not isinstance(call, M.Call):
				raise self._error("expression in go must be function call", tree)
			return M.Spawn(call=call, loc=loc)
		if kind == "expr_stmt":
			return M.ExprStmt(expr=self._expr(tree.children[0]), loc=loc)
		raise self._error(f"unsupported statement {kind}", tree)

	def _if(self, tree: Tree) -> M.If:
		parts = _trees(tree)
		cond = self._expr(parts[0])
		then_body = self._block(parts[1])
		else_body: List[M.Stmt] = []
		if len(parts) > 2:
			tail = parts[2]
			else_body = self._block(tail) if _name(tail) == "block" else [self._if(tail)]
		return M.If(cond=cond, then_body=then_body, else_body=else_body, loc=self._loc(tree))

	def _loop(self, tree: Tree) -> M.Loop:
		fresh = bool(_tokens(tree, "FRESH"))
		names = _tokens(tree, "NAME")
		var = str(names[0])
		parts = _trees(tree)
		loc = self._loc(tree)
		if _name(tree) == "range_loop":
			return M.Loop(
				var=var,
				start=M.Lit(0, loc=loc),
				stop=self._expr(parts[0]),
				body=self._block(parts[1]),
				per_iteration_copy=fresh,
				range_form=True,
				loc=loc,
			)
		start_node, cond_node, step_node, body_node = parts
		cond = self._expr(cond_node)
		if not (
			isinstance(cond, M.BinOp)
			and cond.op is M.BinaryOp.LT
			and isinstance(cond.left, M.Var)
			and cond.left.name == var
		):
			raise self._error(f"loop condition must have the form {var} < bound", cond_node)
		if str(names[1]) != var:
			raise self._error(f"loop post statement must increment {var}", step_node)
		step = 1
		amount = _tokens(step_node, "NUMBER")
		if amount:
			step = _number(amount[0])
			if not isinstance(step, int):
				raise self._error("loop step must be an integer", step_node)
		return M.Loop(
			var=var,
			start=self._expr(start_node),
			stop=cond.right,
			body=self._block(body_node),
			step=step,
			per_iteration_copy=fresh,
			loc=loc,
		)

	# ----------------------------------------------------------- expressions

	def _expr(self, node: Union[Tree, Token]) -> M.Expr:
		if isinstance(node, Token):
			raise self._error(f"unexpected token {node!s}", node)
		kind = _name(node)
		loc = self._loc(node)
		if kind == "number":
			return M.Lit(_number(node.children[0]), loc=loc)
		if kind == "string_lit":
			return M.Lit(_unquote(str(node.children[0])), loc=loc)
		if kind == "true_lit":
			return M.Lit(True, loc=loc)
		if kind == "false_lit":
			return M.Lit(False, loc=loc)
		if kind == "var":
			return M.Var(str(node.children[0]), loc=loc)
		if kind in _BINARY:
			left, right = _trees(node)
			return M.BinOp(_BINARY[kind], self._expr(left), self._expr(right), loc=loc)
		if kind == "neg":
			return M.UnaryOp(M.UnaryKind.NEG, self._expr(node.children[0]), loc=loc)
		if kind == "not_":
			return M.UnaryOp(M.UnaryKind.NOT, self._expr(node.children[0]), loc=loc)
		if kind == "deref":
			return M.Deref(self._expr(node.children[0]), loc=loc)
		if kind == "addr_of":
			return M.AddrOf(str(node.children[0]), loc=loc)
		if kind == "call":
			return self._call(node)
		if kind == "closure":
			params, results = self._signature(node)
			return M.ClosureLit(params=params, results=results, body=self._block(_child(node, "block")), loc=loc)
		if kind == "new":
			return M.HeapAlloc(elem=self._type(_trees(node)[0]), loc=loc)
		if kind == "append":
			args = [self._expr(a) for a in _trees(_child(node, "args"))]
			if not args:
				raise self._error("append needs a sequence argument", node)
			return M.Append(seq=args[0], values=args[1:], loc=loc)
		if kind == "seq_lit":
			args_node = _child(node, "args")
			elements = [self._expr(a) for a in _trees(args_node)] if args_node is not None else []
			return M.SeqLit(elements=elements, loc=loc)
		if kind == "seq_convert":
			parts = _trees(node)
			return M.Convert(self._expr(parts[-1]), TypeTag.SEQUENCE, loc=loc)
		raise self._error(f"unsupported expression {kind}", node)

	def _call(self, tree: Tree) -> M.Expr:
		parts = _trees(tree)
		callee = self._expr(parts[0])
		args_node = parts[1] if len(parts) > 1 else None
		args = [self._expr(a) for a in _trees(args_node)] if args_node is not None else []
		loc = self._loc(tree)
		if isinstance(callee, M.Var) and callee.name in ("any", "string"):
			if len(args) != 1:
				raise self._error(f"conversion to {callee.name} takes exactly one argument", tree)
			if callee.name == "any":
				return M.Box(args[0], loc=loc)
			return M.Convert(args[0], TypeTag.STRING, loc=loc)
		return M.Call(callee=callee, args=args, loc=loc)


def _name(node: Union[Tree, Token]) -> str:
	if isinstance(node, Tree):
		data = node.data
		if isinstance(data, Token):
			return data.value
		return data
	if isinstance(node, Token):
		return node.type
	return str(node)


def _trees(node: Optional[Tree]) -> List[Tree]:
	if node is None:
		return []
	return [child for child in node.children if isinstance(child, Tree)]


def _tokens(node: Tree, ttype: str) -> List[Token]:
	return [child for child in node.children if isinstance(child, Token) and child.type == ttype]


def _child(node: Tree, kind: str) -> Optional[Tree]:
	return next((child for child in _trees(node) if _name(child) == kind), None)


def _number(token: Token):
	text = str(token)
	return float(text) if "." in text else int(text)


def _unquote(text: str) -> str:
	body = text[1:-1]
	return body.encode("utf-8").decode("unicode_escape") if "\\" in body else body


__all__ = ["ParseError", "TerminatorInserter", "parse_source", "parse_file"]
