"""
Transforms an AST document (plain mappings from JSON or YAML) into the
phpwalk.php_ast node tree consumed by the Evaluator.
"""
from dataclasses import fields

from phpwalk import php_ast as ast


class AstTransformer:
    def _attach_loc(self, obj, node):
        line = node.get('line'); col = node.get('col')
        if line is not None:
            obj.loc = {'line': line, 'col': col}
        return obj

    def transform(self, node: object) -> object:
        # Lists: transform each item
        if isinstance(node, list):
            return [self.transform(n) for n in node]

        # Primitives already in final form
        if not isinstance(node, dict):
            return node

        kind = node.get('kind')
        if kind is None:
            return {k: self.transform(v) for k, v in node.items()}

        cls = ast.NODE_TYPES.get(kind)
        if cls is None:
            raise ValueError(f"Unknown node kind: {kind!r}")
        allowed = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in node.items():
            if key in ('kind', 'line', 'col'):
                continue
            if key not in allowed:
                raise ValueError(f"{kind} has no field {key!r}")
            # Literal values are data, not nodes
            kwargs[key] = value if cls is ast.Lit else self.transform(value)
        try:
            obj = cls(**kwargs)
        except TypeError as e:
            raise ValueError(f"Malformed {kind} node: {e}") from e
        return self._attach_loc(obj, node)

    def program(self, document) -> ast.Program:
        """Accepts a Program mapping or a bare list of statements."""
        tree = self.transform(document)
        if isinstance(tree, ast.Program):
            return tree
        if isinstance(tree, list):
            return ast.Program(tree)
        if isinstance(tree, ast.Node):
            return ast.Program([tree])
        raise ValueError("An AST document must be a Program node or a list of statements")
