"""Tests for utility.py and numberer.py - bracketed trees and label numbering."""

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'latentpcfg'))

from utility import (
    ROOT,
    collect_yield,
    ensure_root,
    load_trees,
    string_to_tree,
    tree_depth,
    tree_to_string,
    ParseFailureException,
)
from numberer import Numberer


class TestStringToTree:
    """Tests for string_to_tree."""

    def test_preterminal(self):
        """A single preterminal."""
        assert string_to_tree("(DT the)") == ('DT', 'the')

    def test_binary_tree(self):
        """Binary tree with two preterminals."""
        tree = string_to_tree("(NP (DT the) (NN dog))")
        assert tree == ('NP', ('DT', 'the'), ('NN', 'dog'))

    def test_empty_top_label_is_root(self):
        """Penn-style empty top bracket becomes ROOT."""
        tree = string_to_tree("( (S (NP (NNP John)) (VP (VBD slept))))")
        assert tree[0] == ROOT
        assert tree[1][0] == 'S'

    def test_unbalanced(self):
        """Missing closing bracket."""
        with pytest.raises(ParseFailureException):
            string_to_tree("(S (NP (DT the) (NN dog))")

    def test_trailing_material(self):
        """Extra tokens after the tree."""
        with pytest.raises(ParseFailureException):
            string_to_tree("(DT the) extra")

    def test_empty_string(self):
        with pytest.raises(ParseFailureException):
            string_to_tree("   ")

    def test_round_trip_string(self):
        """tree_to_string inverts string_to_tree."""
        s = "(S (NP (DT the) (NN dog)) (VP (VBD barked)))"
        assert tree_to_string(string_to_tree(s)) == s


class TestTreeHelpers:
    """Tests for yield, depth and ROOT wrapping."""

    def test_collect_yield(self):
        tree = ('S', ('NP', ('DT', 'the'), ('NN', 'dog')), ('VP', ('VBD', 'barked')))
        assert collect_yield(tree) == ['the', 'dog', 'barked']

    def test_tree_depth(self):
        tree = ('S', ('NP', ('DT', 'the'), ('NN', 'dog')), ('VP', ('VBD', 'barked')))
        assert tree_depth(tree) == 3

    def test_ensure_root_wraps(self):
        """A tree without ROOT gets a unary ROOT on top."""
        tree = ('S', ('NN', 'dog'))
        assert ensure_root(tree) == (ROOT, tree)

    def test_ensure_root_idempotent(self):
        tree = (ROOT, ('S', ('NN', 'dog')))
        assert ensure_root(tree) is tree


class TestLoadTrees:
    """Tests for load_trees on the fixture treebank."""

    def test_load(self, treebank_path):
        """Comment lines are skipped and every tree is ROOT-wrapped."""
        trees = load_trees(treebank_path)
        assert len(trees) == 8
        assert all(t[0] == ROOT for t in trees)

    def test_max_length(self, treebank_path):
        """Trees of more than three words are dropped."""
        trees = load_trees(treebank_path, max_length=3)
        assert len(trees) == 5
        assert all(len(collect_yield(t)) <= 3 for t in trees)

    def test_bad_line_reports_line_number(self, tmp_path):
        path = tmp_path / "bad.txt"
        path.write_text("(S (NN dog))\n(S (NN dog)\n")
        with pytest.raises(ParseFailureException, match="Line 2"):
            load_trees(str(path))


class TestNumberer:
    """Tests for the label numberer."""

    def test_root_is_zero(self):
        n = Numberer()
        assert n.number(ROOT) == 0
        assert n.symbol(0) == ROOT

    def test_number_is_stable(self):
        n = Numberer()
        a = n.number('NP')
        b = n.number('VP')
        assert n.number('NP') == a
        assert b == a + 1
        assert len(n) == 3
        assert n.labels() == [ROOT, 'NP', 'VP']

    def test_frozen_rejects_new_labels(self):
        n = Numberer()
        n.number('NP')
        n.freeze()
        assert n.number('NP') == 1
        with pytest.raises(KeyError):
            n.number('PP')

    def test_contains(self):
        n = Numberer()
        n.number('NP')
        assert 'NP' in n
        assert 'VP' not in n
