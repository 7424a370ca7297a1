"""Shared fixtures and test utilities for the latentpcfg test suite."""

import os
import sys
import pytest
import numpy as np

# Add latentpcfg to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'latentpcfg'))

import utility
from numberer import Numberer
from trees import state_set_tree


# Fixture paths
FIXTURES_DIR = os.path.join(os.path.dirname(__file__), 'fixtures')


class StubLexicon:
    """Scores every word 1.0 for every substate of every tag."""

    def score_state_set(self, leaf, tag, no_smoothing=False):
        return self.scores[tag]

    def __init__(self, num_substates):
        self.scores = [np.ones(n) for n in num_substates]


def make_tree(s, numberer=None, num_substates=None):
    """Bracketed string -> (Tree of StateSets, numberer)."""
    if numberer is None:
        numberer = Numberer()
    tree = state_set_tree(utility.ensure_root(utility.string_to_tree(s)), numberer, num_substates)
    return tree, numberer


@pytest.fixture
def treebank_path():
    """Path to the small training treebank."""
    return os.path.join(FIXTURES_DIR, 'treebank.txt')


@pytest.fixture
def dev_treebank_path():
    """Path to the held-out treebank."""
    return os.path.join(FIXTURES_DIR, 'dev.txt')


@pytest.fixture
def treebank(treebank_path):
    return utility.load_trees(treebank_path)


@pytest.fixture
def dev_treebank(dev_treebank_path):
    return utility.load_trees(dev_treebank_path)


@pytest.fixture
def rng():
    """Provide a seeded random number generator for reproducibility."""
    return np.random.default_rng(42)
