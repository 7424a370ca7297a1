#utility.py
# Bracketed tree handling shared by the trainer and the tests.
# Trees are nested tuples: (label, child, child) for internal nodes and
# (tag, word) for preterminals.

ROOT = "ROOT"


class ParseFailureException(Exception):
	pass


class MalformedTreeException(Exception):
	pass


def _tokenize(s):
	return s.replace("(", " ( ").replace(")", " ) ").split()


def string_to_tree(s):
	"""
	Parse a bracketed string like (S (NP (DT the) (NN dog)) (VP (VBD ran))).

	An empty top label, as in the Penn treebank "( (S ...))", is read as ROOT.
	"""
	tokens = _tokenize(s)
	if len(tokens) == 0:
		raise ParseFailureException("Empty tree string")
	tree, i = _parse(tokens, 0)
	if i != len(tokens):
		raise ParseFailureException("Trailing material after tree: " + " ".join(tokens[i:]))
	return tree


def _parse(tokens, i):
	if tokens[i] != "(":
		raise ParseFailureException("Expected ( at token %d, got %s" % (i, tokens[i]))
	i += 1
	if i >= len(tokens):
		raise ParseFailureException("Unbalanced brackets")
	if tokens[i] == "(":
		label = ROOT
	else:
		label = tokens[i]
		i += 1
	children = []
	while True:
		if i >= len(tokens):
			raise ParseFailureException("Unbalanced brackets")
		tok = tokens[i]
		if tok == ")":
			i += 1
			break
		if tok == "(":
			child, i = _parse(tokens, i)
			children.append(child)
		else:
			children.append(tok)
			i += 1
	if len(children) == 0:
		raise ParseFailureException("Node %s has no children" % label)
	return (label,) + tuple(children), i


def tree_to_string(tree):
	if isinstance(tree, str):
		return tree
	return "(" + tree[0] + " " + " ".join(tree_to_string(c) for c in tree[1:]) + ")"


def collect_yield(tree):
	if isinstance(tree, str):
		return [tree]
	result = []
	for child in tree[1:]:
		result.extend(collect_yield(child))
	return result


def tree_depth(tree):
	if isinstance(tree, str):
		return 0
	return 1 + max(tree_depth(c) for c in tree[1:])


def ensure_root(tree, root=ROOT):
	"""Wrap the tree in a ROOT node unless it already has one."""
	if tree[0] == root:
		return tree
	return (root, tree)


def load_trees(filename, max_length=None):
	"""
	Read one bracketed tree per line. Blank lines and lines starting with #
	are skipped, as are trees longer than max_length words.
	"""
	trees = []
	with open(filename) as inf:
		for lineno, line in enumerate(inf, 1):
			line = line.strip()
			if len(line) == 0 or line[0] == '#':
				continue
			try:
				tree = ensure_root(string_to_tree(line))
			except ParseFailureException as e:
				raise ParseFailureException("Line %d: %s" % (lineno, e))
			if max_length and len(collect_yield(tree)) > max_length:
				continue
			trees.append(tree)
	return trees
