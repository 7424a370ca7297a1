"""Substate-annotated parse trees.

A training tree is converted once from its nested-tuple form into a Tree of
StateSet labels. Each StateSet holds the coarse state id, the number of
substates, the token span and, while a tree is being parsed, its inside and
outside score vectors together with their scale exponents.
"""

import numpy as np

import scaling
from utility import MalformedTreeException


class StateSet:
    """Annotation of one tree node (or of a leaf token, with state 0)."""

    def __init__(self, state, num_substates, word=None, start=0, end=0):
        self.state = state
        self.num_substates = num_substates
        self.word = word
        self.start = start
        self.end = end
        self.inside = None
        self.outside = None
        self.inside_scale = 0
        self.outside_scale = 0

    def allocate(self):
        self.inside = np.zeros(self.num_substates)
        self.outside = np.zeros(self.num_substates)
        self.inside_scale = 0
        self.outside_scale = 0

    def deallocate(self):
        self.inside = None
        self.outside = None

    def set_inside(self, scores, scale):
        self.inside = scores
        self.inside_scale = scale

    def set_outside(self, scores, scale):
        self.outside = scores
        self.outside_scale = scale

    def inside_log(self, substate):
        return scaling.log_score(self.inside[substate], self.inside_scale)

    def outside_log(self, substate):
        return scaling.log_score(self.outside[substate], self.outside_scale)

    def resized(self, num_substates):
        return StateSet(self.state, num_substates, self.word, self.start, self.end)

    def __repr__(self):
        if self.word is not None:
            return self.word
        return "%d(%d)" % (self.state, self.num_substates)


class Tree:

    def __init__(self, label, children=None):
        self.label = label
        self.children = children if children is not None else []

    def is_leaf(self):
        return len(self.children) == 0

    def is_preterminal(self):
        return len(self.children) == 1 and self.children[0].is_leaf()

    def post_order(self):
        for child in self.children:
            yield from child.post_order()
        yield self

    def pre_order(self):
        yield self
        for child in self.children:
            yield from child.pre_order()

    def leaves(self):
        return [t.label for t in self.pre_order() if t.is_leaf()]

    def preterminals(self):
        return [t.label for t in self.pre_order() if t.is_preterminal()]

    def yield_words(self):
        return [s.word for s in self.leaves()]

    def __repr__(self):
        if self.is_leaf():
            return repr(self.label)
        return "(%r %s)" % (self.label, " ".join(repr(c) for c in self.children))


def _substates_for(state, num_substates):
    if num_substates is None or state >= len(num_substates):
        return 1
    return num_substates[state]


def state_set_tree(tree, numberer, num_substates=None):
    """Convert a nested-tuple tree into a Tree of StateSets.

    Args:
        tree: (label, child, ...) tuple with string leaves.
        numberer: Numberer used to map labels to state ids.
        num_substates: per-state substate counts. States beyond its end, and
            the top node, get a single substate.

    Returns:
        The converted Tree, with leaf spans set to their sentence positions.
    """
    result, _ = _convert(tree, numberer, num_substates, 0, True)
    return result


def _convert(tree, numberer, num_substates, start, is_root):
    if isinstance(tree, str):
        return Tree(StateSet(0, 1, tree, start, start + 1)), start + 1
    if len(tree) > 3:
        raise MalformedTreeException(
            "Node %s has %d children; trees must be binarized" % (tree[0], len(tree) - 1))
    if len(tree) == 3 and any(isinstance(child, str) for child in tree[1:]):
        raise MalformedTreeException("Node %s mixes words into a binary production" % tree[0])
    state = numberer.number(tree[0])
    n = 1 if is_root else _substates_for(state, num_substates)
    children = []
    end = start
    for child in tree[1:]:
        converted, end = _convert(child, numberer, num_substates, end, False)
        children.append(converted)
    return Tree(StateSet(state, n, None, start, end), children), end


def state_set_trees(trees, numberer, num_substates=None):
    return [state_set_tree(t, numberer, num_substates) for t in trees]


def resize_tree(tree, num_substates):
    """Copy of tree with every node's substate count taken from num_substates."""
    if tree.is_leaf():
        return tree
    label = tree.label.resized(num_substates[tree.label.state])
    return Tree(label, [resize_tree(c, num_substates) for c in tree.children])


def resize_trees(trees, num_substates):
    return [resize_tree(t, num_substates) for t in trees]


def deallocate_tree(tree):
    for node in tree.post_order():
        node.label.deallocate()


def deallocate_trees(trees):
    for tree in trees:
        deallocate_tree(tree)
