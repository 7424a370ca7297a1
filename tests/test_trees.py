"""Tests for trees.py - StateSet trees built from bracketed trees."""

import sys
import os

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'latentpcfg'))

from conftest import make_tree
from numberer import Numberer
from trees import deallocate_tree, deallocate_trees, resize_tree, state_set_tree
from utility import MalformedTreeException


class TestStateSetTree:
    """Tests for converting tuples to StateSet trees."""

    def test_spans_and_words(self):
        tree, numberer = make_tree("(S (NP (DT the) (NN dog)) (VP (VBD barked)))")
        s = tree.children[0]
        assert tree.label.state == 0
        assert numberer.symbol(s.label.state) == 'S'
        assert (s.label.start, s.label.end) == (0, 3)
        np_ = s.children[0]
        assert (np_.label.start, np_.label.end) == (0, 2)
        assert [leaf.word for leaf in tree.leaves()] == ['the', 'dog', 'barked']
        assert [leaf.start for leaf in tree.leaves()] == [0, 1, 2]
        assert tree.yield_words() == ['the', 'dog', 'barked']

    def test_preterminals(self):
        tree, numberer = make_tree("(S (NP (DT the) (NN dog)) (VP (VBD barked)))")
        tags = [numberer.symbol(t.state) for t in tree.preterminals()]
        assert tags == ['DT', 'NN', 'VBD']

    def test_root_is_unsplit(self):
        """The top node gets one substate whatever num_substates says."""
        numberer = Numberer()
        for label in ['S', 'NN']:
            numberer.number(label)
        tree = state_set_tree(('ROOT', ('S', ('NN', 'dog'))), numberer, [4, 4, 4])
        assert tree.label.num_substates == 1
        assert tree.children[0].label.num_substates == 4

    def test_unbinarized_tree_rejected(self):
        with pytest.raises(MalformedTreeException):
            make_tree("(S (A a) (B b) (C c))")

    @pytest.mark.parametrize("s", ["(A a b)", "(S (A a) b)", "(S a (B b))"])
    def test_words_in_binary_production_rejected(self, s):
        with pytest.raises(MalformedTreeException):
            make_tree(s)


class TestResizeAndDeallocate:

    def test_resize(self):
        tree, numberer = make_tree("(S (NP (DT the) (NN dog)) (VP (VBD barked)))")
        num_substates = [1] + [2] * (numberer.size() - 1)
        resized = resize_tree(tree, num_substates)
        for node in resized.pre_order():
            if node.is_leaf():
                continue
            assert node.label.num_substates == num_substates[node.label.state]
        assert tree.children[0].label.num_substates == 1

    def test_deallocate(self):
        tree, _ = make_tree("(S (NN dog))")
        for node in tree.post_order():
            node.label.allocate()
        assert tree.label.inside is not None
        deallocate_tree(tree)
        assert all(node.label.inside is None for node in tree.post_order())
        assert all(node.label.outside is None for node in tree.post_order())

    def test_deallocate_trees(self):
        trees = [make_tree("(S (NN dog))")[0], make_tree("(S (NN cat))")[0]]
        for tree in trees:
            tree.label.allocate()
        deallocate_trees(trees)
        assert all(tree.label.inside is None for tree in trees)


class TestStateSetScores:

    def test_log_scores_combine_exponent(self):
        """inside_log adds the exponent back on."""
        tree, _ = make_tree("(S (NN dog))")
        label = tree.label
        label.set_inside(np.array([0.5]), -1)
        label.set_outside(np.array([0.25]), 0)
        assert label.inside_log(0) == pytest.approx(np.log(0.5) - 256 * np.log(2))
        assert label.outside_log(0) == pytest.approx(np.log(0.25))
