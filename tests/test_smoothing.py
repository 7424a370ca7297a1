"""Tests for smoothing.py - split trees and smoothers."""

import sys
import os

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'latentpcfg'))

from smoothing import (
    NoSmoothing,
    SmoothAcrossParentBits,
    extend_split_trees,
    initial_split_trees,
    prune_split_trees,
)


def split_twice():
    trees = initial_split_trees([1, 1])
    trees = extend_split_trees(trees, [1, 1], [1, 2])
    return extend_split_trees(trees, [1, 2], [1, 4])


class TestSplitTrees:
    """Tests for the split tree history."""

    def test_initial(self):
        trees = initial_split_trees([1, 1])
        assert [t.leaves() for t in trees] == [[0], [0]]

    def test_extend(self):
        trees = split_twice()
        assert sorted(trees[1].leaves()) == [0, 1, 2, 3]
        assert trees[0].leaves() == [0]
        assert [c.leaves() for c in trees[1].children] == [[0, 1], [2, 3]]

    def test_prune_after_merge(self):
        """Merging substates 2 and 3 leaves leaves 0, 1, 2."""
        trees = split_twice()
        partners = [None, [[0], [1], [2, 3], [2, 3]]]
        mapping = [np.array([0]), np.array([0, 1, 2, 2])]
        pruned = prune_split_trees(trees, partners, mapping)
        assert sorted(pruned[1].leaves()) == [0, 1, 2]
        assert sorted(trees[1].leaves()) == [0, 1, 2, 3]


class TestSmoothers:

    def test_no_smoothing(self):
        scores = np.array([0.2, 0.8])
        assert NoSmoothing().smooth_vector(1, scores) is scores

    def test_smooth_within_branch(self):
        """Substates share mass only with their own top-level branch."""
        smoother = SmoothAcrossParentBits(0.1, split_twice())
        scores = np.array([1.0, 0.0, 0.0, 0.0])
        smoothed = smoother.smooth_vector(1, scores)
        assert smoothed.tolist() == pytest.approx([0.9, 0.1, 0.0, 0.0])

    def test_singleton_branches_untouched(self):
        """After a single split each branch holds one substate."""
        trees = extend_split_trees(initial_split_trees([1, 1]), [1, 1], [1, 2])
        smoother = SmoothAcrossParentBits(0.1, trees)
        scores = np.array([0.3, 0.7])
        assert smoother.smooth_vector(1, scores).tolist() == pytest.approx([0.3, 0.7])

    def test_unsplit_state(self):
        smoother = SmoothAcrossParentBits(0.5, split_twice())
        assert smoother.smooth_vector(0, np.array([0.4])).tolist() == pytest.approx([0.4])
