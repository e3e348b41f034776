"""Mango selectors, compiled to Python functions.

Instead of interpreting a selector for every document, compile_selector()
turns it into a Python AST once and compiles that into a 'match(doc)'
function. For example, {"type": "post", "year": {"$gt": 2010}} becomes
(roughly):

    def match(doc):
        return (field(doc, ('type',)) is not MISSING and
                key(field(doc, ('type',))) == b'...') and (...)

Comparisons use the CouchDB collation order (see collation.py), so e.g.
{"$lt": 5} also matches null and booleans, just like in CouchDB. A field that
does not exist never matches a condition, except for {"$exists": false}.

"""
import ast
import copy
import re

from .collation import collation_key, type_name
from .errors import BadRequest

BASE_AST = ast.parse("""
def match(doc):
    return test
""")

MISSING = object()

COMPARATORS = {
    '$eq': ast.Eq,
    '$ne': ast.NotEq,
    '$lt': ast.Lt,
    '$lte': ast.LtE,
    '$gt': ast.Gt,
    '$gte': ast.GtE,
}


class PlaceholderReplacer(ast.NodeTransformer):
    def __init__(self, replacements):
        self.replacements = replacements

    def visit_Name(self, node):
        return self.replacements.get(node.id, node)


def compile_selector(selector):
    """Returns a function that takes a document and returns whether it
    matches 'selector'. Raises BadRequest for invalid selectors.

    """
    if not isinstance(selector, dict):
        raise BadRequest('selector must be a JSON object')

    compiler = SelectorCompiler()
    test = compiler.selector(selector, name('doc'))

    base_ast = copy.deepcopy(BASE_AST)
    tree = PlaceholderReplacer({'test': test}).visit(base_ast)
    ast.fix_missing_locations(tree)

    namespace = {
        'ARGS': compiler.args,
        'MISSING': MISSING,
        'key': collation_key,
        **{helper.__name__: helper for helper in RUNTIME_HELPERS},
    }
    exec(compile(tree, '<selector>', 'exec'), namespace)
    return namespace['match']


class SelectorCompiler:
    def __init__(self):
        # values that can't be stored in an ast.Constant, like lists
        self.args = []
        self._depth = 0

    def selector(self, selector, target):
        conditions = []
        for key, value in selector.items():
            if key in ('$and', '$or', '$nor'):
                conditions.append(self.combination(key, value, target))
            elif key == '$not':
                conditions.append(ast.UnaryOp(ast.Not(),
                                              self.sub_selector(value, target)))
            elif key.startswith('$'):
                conditions.append(self.operator(key, value, target))
            else:
                path = tuple(key.split('.'))
                conditions.append(self.field_condition(value, call(
                    'field', target, ast.Constant(path))))
        return all_of(conditions)

    def sub_selector(self, selector, target):
        if not isinstance(selector, dict):
            raise BadRequest('expected a JSON object as argument')
        return self.selector(selector, target)

    def combination(self, operator, selectors, target):
        if not isinstance(selectors, list):
            raise BadRequest(f'{operator} requires an array of selectors')
        tests = [self.sub_selector(s, target) for s in selectors]
        if operator == '$and':
            return all_of(tests)
        any_test = ast.BoolOp(ast.Or(), tests) if tests else constant(False)
        if operator == '$nor':
            return ast.UnaryOp(ast.Not(), any_test)
        return any_test

    def field_condition(self, condition, target):
        if not isinstance(condition, dict) or not condition:
            # implicit $eq
            return self.operator('$eq', condition, target)

        conditions = []
        for key, value in condition.items():
            if key.startswith('$'):
                conditions.append(self.operator(key, value, target))
            else:
                conditions.append(self.selector({key: value}, target))
        return all_of(conditions)

    def operator(self, operator, arg, target):
        exists = ast.Compare(target, [ast.IsNot()], [name('MISSING')])
        if operator in COMPARATORS:
            comparison = ast.Compare(call('key', target),
                                     [COMPARATORS[operator]()],
                                     [constant(collation_key(arg))])
            return ast.BoolOp(ast.And(), [exists, comparison])
        if operator == '$exists':
            if not isinstance(arg, bool):
                raise BadRequest('$exists requires a boolean')
            return exists if arg else ast.UnaryOp(ast.Not(), exists)
        if operator == '$not':
            return ast.UnaryOp(ast.Not(), self.field_condition(arg, target))
        if operator in ('$elemMatch', '$allMatch'):
            return self.element_match(operator, arg, target)
        try:
            helper, validate = OPERATORS[operator]
        except KeyError:
            raise BadRequest(f'unknown operator: {operator}') from None
        return call(helper.__name__, target, self.arg(validate(arg)))

    def element_match(self, operator, selector, target):
        self._depth += 1
        elem = f'elem{self._depth}'
        test = self.sub_selector(selector, name(elem))
        self._depth -= 1

        args = ast.arguments(posonlyargs=[], args=[ast.arg(elem)],
                             kwonlyargs=[], kw_defaults=[], defaults=[])
        helper = 'any_element' if operator == '$elemMatch' else 'all_elements'
        return call(helper, target, ast.Lambda(args, test))

    def arg(self, value):
        self.args.append(value)
        index = ast.Constant(len(self.args) - 1)
        return ast.Subscript(name('ARGS'), index, ast.Load())


# AST helpers
def name(id):
    return ast.Name(id, ast.Load())


def constant(value):
    return ast.Constant(value)


def call(func_name, *args):
    return ast.Call(name(func_name), list(args), [])


def all_of(tests):
    if not tests:
        return constant(True)
    if len(tests) == 1:
        return tests[0]
    return ast.BoolOp(ast.And(), tests)


# runtime helpers, available to the compiled code
def field(obj, path):
    for part in path:
        if not isinstance(obj, dict) or part not in obj:
            return MISSING
        obj = obj[part]
    return obj


def op_in(value, keys):
    if value is MISSING:
        return False
    if isinstance(value, list):
        return any(collation_key(item) in keys for item in value)
    return collation_key(value) in keys


def op_nin(value, keys):
    return value is not MISSING and not op_in(value, keys)


def op_type(value, type):
    return value is not MISSING and type_name(value) == type


def op_size(value, size):
    return isinstance(value, list) and len(value) == size


def op_mod(value, arg):
    # JSON has no separate integer type, so 4.0 counts as an integer
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and not value.is_integer():
        return False
    divisor, remainder = arg
    return int(value) % divisor == remainder


def op_regex(value, pattern):
    return isinstance(value, str) and pattern.search(value) is not None


def op_all(value, keys):
    if not isinstance(value, list):
        return False
    present = {collation_key(item) for item in value}
    return keys.issubset(present)


def any_element(value, test):
    return isinstance(value, list) and any(test(item) for item in value)


def all_elements(value, test):
    return (isinstance(value, list) and bool(value) and
            all(test(item) for item in value))


RUNTIME_HELPERS = (field, op_in, op_nin, op_type, op_size, op_mod, op_regex,
                   op_all, any_element, all_elements)


# argument validation/preprocessing
def key_set(arg):
    if not isinstance(arg, list):
        raise BadRequest('expected an array as argument')
    return frozenset(collation_key(item) for item in arg)


def type_arg(arg):
    types = ('null', 'boolean', 'number', 'string', 'array', 'object')
    if arg not in types:
        raise BadRequest(f'$type must be one of {", ".join(types)}')
    return arg


def size_arg(arg):
    if not isinstance(arg, int) or isinstance(arg, bool):
        raise BadRequest('$size requires an integer')
    return arg


def mod_arg(arg):
    valid = (
        isinstance(arg, list) and len(arg) == 2 and
        all(isinstance(n, int) and not isinstance(n, bool) for n in arg) and
        arg[0] != 0
    )
    if not valid:
        raise BadRequest('$mod requires [divisor, remainder]')
    return tuple(arg)


def regex_arg(arg):
    try:
        return re.compile(arg)
    except (re.error, TypeError) as exc:
        raise BadRequest(f'invalid $regex: {exc}') from exc


OPERATORS = {
    '$in': (op_in, key_set),
    '$nin': (op_nin, key_set),
    '$type': (op_type, type_arg),
    '$size': (op_size, size_arg),
    '$mod': (op_mod, mod_arg),
    '$regex': (op_regex, regex_arg),
    '$all': (op_all, key_set),
}
