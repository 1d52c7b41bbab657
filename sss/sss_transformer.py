"""
Transforms the raw koine parse tree into the SSS AST (sss_datatypes).
"""

from sss.sss_datatypes import (
    Type, SCALAR_TYPES,
    Program, FunctionDef, Param, Block, Declaration, Assignment, ExprStatement,
    BinaryOp, FunctionCall, MethodCall, FieldAccess, Index, ArrayLiteral,
    Literal, Identifier, ScriptSyntaxError,
)

# Tags produced by the grammar. Any other node (grouping rules such as
# 'statement' or 'atom', undiscarded punctuation) is looked through.
KNOWN_TAGS = frozenset({
    'script', 'fun-def', 'param', 'return-type', 'type', 'type-name', 'array-suffix',
    'block', 'declaration', 'decl-kind', 'assignment', 'expr-statement',
    'expression', 'bin-op', 'primary', 'method-call', 'field-access', 'index',
    'fun-call', 'group', 'array', 'number', 'string', 'identifier',
})


class SSSTransformer:
    def _loc(self, node):
        line = node.get('line'); col = node.get('col')
        if line is None:
            return None
        return {'line': line, 'col': col}

    def _parts(self, children) -> list:
        """Flatten koine children down to the list of known tagged nodes."""
        out = []
        if children is None:
            return out
        if isinstance(children, dict):
            if children.get('tag') in KNOWN_TAGS:
                return [children]
            if 'tag' in children:
                return self._parts(children.get('children'))
            # Named-children dict
            children = list(children.values())
        for ch in children:
            if isinstance(ch, list):
                out.extend(self._parts(ch))
            elif isinstance(ch, dict):
                if ch.get('tag') in KNOWN_TAGS:
                    out.append(ch)
                else:
                    out.extend(self._parts(ch.get('children') if 'tag' in ch else ch))
        return out

    def transform(self, node) -> Program:
        """Transform a koine result (the `ast` payload) into a Program."""
        if isinstance(node, dict) and node.get('tag') == 'script':
            return Program(tuple(self._item(p) for p in self._parts(node.get('children'))), self._loc(node))
        parts = self._parts(node if isinstance(node, list) else [node])
        if len(parts) == 1 and parts[0].get('tag') == 'script':
            return self.transform(parts[0])
        return Program(tuple(self._item(p) for p in parts), {'line': 1, 'col': 1})

    # --- Statements ---

    def _item(self, node):
        if node.get('tag') == 'fun-def':
            return self._fun_def(node)
        return self._statement(node)

    def _fun_def(self, node) -> FunctionDef:
        parts = self._parts(node.get('children'))
        name = parts[0]['text']
        params = []
        return_type = None
        body = None
        for p in parts[1:]:
            match p.get('tag'):
                case 'param':
                    pp = self._parts(p.get('children'))
                    params.append(Param(pp[0]['text'], self._type(pp[1]), self._loc(p)))
                case 'return-type':
                    return_type = self._type(self._parts(p.get('children'))[0])
                case 'block':
                    body = self._block(p)
        return FunctionDef(name, tuple(params), return_type, body, self._loc(node))

    def _block(self, node) -> Block:
        return Block(tuple(self._statement(s) for s in self._parts(node.get('children'))), self._loc(node))

    def _statement(self, node):
        tag = node.get('tag')
        loc = self._loc(node)
        parts = self._parts(node.get('children'))
        match tag:
            case 'block':
                return self._block(node)
            case 'declaration':
                kind, ident, tnode, value = parts
                return Declaration(ident['text'], self._type(tnode), self._expression(value),
                                   kind['text'] == 'const', loc)
            case 'assignment':
                ident, value = parts
                return Assignment(ident['text'], self._expression(value), loc)
            case 'expr-statement':
                return ExprStatement(self._expression(parts[0]), loc)
            case _:
                raise ScriptSyntaxError(f"unexpected '{tag}' node at statement level", loc)

    def _type(self, node) -> Type:
        parts = self._parts(node.get('children'))
        name_node = parts[0] if parts else node
        base = SCALAR_TYPES[name_node['text'].strip()]
        is_array = any(p.get('tag') == 'array-suffix' for p in parts)
        return base.array_of() if is_array else base

    # --- Expressions ---

    def _expression(self, node):
        tag = node.get('tag')
        if tag != 'expression':
            return self._term(node)
        parts = self._parts(node.get('children'))
        # Flat chain: no precedence, strictly left-associative.
        result = self._term(parts[0])
        for i in range(1, len(parts) - 1, 2):
            op = parts[i]
            result = BinaryOp(op['text'], result, self._term(parts[i + 1]), self._loc(op))
        return result

    def _args(self, parts):
        return tuple(self._expression(p) for p in parts)

    def _term(self, node):
        tag = node.get('tag')
        loc = self._loc(node)
        match tag:
            case 'primary':
                parts = self._parts(node.get('children'))
                result = self._term(parts[0])
                for seg in parts[1:]:
                    seg_parts = self._parts(seg.get('children'))
                    seg_loc = self._loc(seg)
                    match seg.get('tag'):
                        case 'method-call':
                            result = MethodCall(result, seg_parts[0]['text'], self._args(seg_parts[1:]), seg_loc)
                        case 'field-access':
                            result = FieldAccess(result, seg_parts[0]['text'], seg_loc)
                        case 'index':
                            result = Index(result, self._expression(seg_parts[0]), seg_loc)
                return result
            case 'expression':
                return self._expression(node)
            case 'group':
                return self._expression(self._parts(node.get('children'))[0])
            case 'fun-call':
                parts = self._parts(node.get('children'))
                return FunctionCall(parts[0]['text'], self._args(parts[1:]), loc)
            case 'array':
                return ArrayLiteral(self._args(self._parts(node.get('children'))), loc)
            case 'number':
                txt = node['text']
                # Integers stay exact; "1." and "1.5" are floats.
                return Literal(float(txt) if '.' in txt else int(txt), loc)
            case 'string':
                return Literal(node['text'][1:-1], loc)
            case 'identifier':
                return Identifier(node['text'], loc)
            case _:
                raise ScriptSyntaxError(f"No transformer for tag '{tag}'", loc)
