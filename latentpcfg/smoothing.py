#smoothing.py
# Smoothers applied to rule and lexical probabilities over the parent substate
# dimension, and the split trees that record how each state was split.

import copy

import numpy as np

from trees import Tree


def initial_split_trees(num_substates):
	"""One split tree per state: a root whose leaves are the current substates."""
	has_splits = any(n > 1 for n in num_substates)
	result = []
	for n in num_substates:
		children = [Tree(s) for s in range(n)] if has_splits else []
		result.append(Tree(0, children))
	return result


def extend_split_trees(split_trees, old_num_substates, new_num_substates):
	"""Copy of the split trees with every leaf split in two (or carried over unsplit)."""
	result = []
	for state, tree in enumerate(split_trees):
		tree = copy.deepcopy(tree)
		for leaf in [t for t in tree.pre_order() if t.is_leaf()]:
			if new_num_substates[state] > old_num_substates[state]:
				leaf.children = [Tree(2 * leaf.label), Tree(2 * leaf.label + 1)]
			else:
				leaf.children = [Tree(leaf.label)]
		result.append(tree)
	return result


def _height(tree):
	if tree.is_leaf():
		return 1
	return 1 + max(_height(c) for c in tree.children)


def prune_split_trees(split_trees, partners, mapping):
	"""Copy of the split trees after a merge: drop second partners and renumber the rest."""
	result = []
	for state, tree in enumerate(split_trees):
		tree = copy.deepcopy(tree)
		if partners[state] is not None:
			depth = _height(tree) - 2
			for node in _nodes_at_depth(tree, depth):
				new_children = []
				for child in node.children:
					loc = child.label
					if partners[state][loc][0] == loc:
						new_children.append(Tree(mapping[state][loc]))
				node.children = new_children
		result.append(tree)
	return result


def _nodes_at_depth(tree, depth):
	if depth == 0:
		return [tree]
	result = []
	for child in tree.children:
		result.extend(_nodes_at_depth(child, depth - 1))
	return result


class NoSmoothing:

	def smooth_vector(self, state, scores):
		return scores

	def __repr__(self):
		return "NoSmoothing()"


class SmoothAcrossParentBits:
	"""
	Interpolate each substate's scores with those of the other substates
	descending from the same top-level split of its state:
	new[i] = (1 - smooth) * old[i] + smooth / (n - 1) * sum of old over the
	n - 1 others in that branch. Substates never share mass across the first
	split of a state.
	"""

	def __init__(self, smooth, split_trees):
		self.smooth = smooth
		self.same = 1.0 - smooth
		self.weights = []
		for tree in split_trees:
			substates = tree.leaves()
			n = max(substates) + 1 if substates else 1
			w = np.zeros((n, n))
			if n == 1:
				w[0, 0] = 1.0
				self.weights.append(w)
				continue
			node = tree
			while len(node.children) == 1:
				node = node.children[0]
			branches = [c.leaves() for c in node.children] if node.children else [[0]]
			for branch in branches:
				if len(branch) == 1:
					w[branch[0], branch[0]] = 1.0
					continue
				other = smooth / (len(branch) - 1)
				for i in branch:
					for j in branch:
						w[i, j] = self.same if i == j else other
			self.weights.append(w)

	def smooth_vector(self, state, scores):
		return self.weights[state] @ scores

	def __repr__(self):
		return "SmoothAcrossParentBits(%g)" % self.smooth
