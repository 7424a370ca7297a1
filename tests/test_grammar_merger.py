"""Tests for grammar_merger.py - merge weights, likelihood deltas and pair selection."""

import logging
import sys
import os

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'latentpcfg'))

from grammar import Grammar
from grammar_merger import (
    LIKELIHOOD,
    MODELED,
    TOTAL_RULE_COUNT,
    MergeCandidate,
    compute_merge_likelihood_deltas,
    compute_merge_weights,
    determine_merge_pairs,
    do_the_merges,
    merge_candidates,
    print_merging_statistics,
    rank_candidates,
    select_merge_pairs,
)
from lexicon import Lexicon
from numberer import Numberer
from trees import resize_trees, state_set_trees


def split_model(treebank, rng, randomness=0.0, splits=1):
    """Unsplit grammar and lexicon from the treebank, split `splits` times."""
    numberer = Numberer()
    trees = state_set_trees(treebank, numberer)
    numberer.freeze()
    ns = [1] * numberer.size()
    grammar = Grammar(ns, numberer=numberer)
    first = Lexicon(ns)
    for tree in trees:
        first.train_tree(tree, 0.0, None, False, 20, rng)
    lexicon = first.copy_lexicon()
    for tree in trees:
        lexicon.train_tree(tree, 0.0, first, False, 20, rng)
        grammar.count_unsplit_tree(tree)
    lexicon.tie_rare_word_stats(20)
    grammar.optimize()
    for _ in range(splits):
        grammar = grammar.split_all_states(randomness, rng)
        lexicon = lexicon.split_all_states()
    return grammar, lexicon, numberer, resize_trees(trees, grammar.num_substates)


def sibling_deltas(values):
    """Deltas for states with two substates each; values[k] goes to state k + 1."""
    deltas = [np.zeros((1, 1))]
    for v in values:
        d = np.zeros((2, 2))
        d[0, 1] = v
        deltas.append(d)
    return deltas


class TestDeterminePairs:
    """Tests for the likelihood threshold selection."""

    def test_fraction(self):
        """Half of four siblings sets the threshold at the third smallest loss."""
        deltas = sibling_deltas([3.0, 1.0, 4.0, 2.0])
        pairs = determine_merge_pairs(deltas, 0.5, [1, 2, 2, 2, 2])
        merged = [bool(p[0, 1]) for p in pairs[1:]]
        assert merged == [True, True, False, True]
        assert not pairs[0].any()

    def test_zero_delta_not_candidate(self):
        deltas = sibling_deltas([0.0, 1.0, 2.0])
        pairs = determine_merge_pairs(deltas, 1.0, [1, 2, 2, 2])
        assert [bool(p[0, 1]) for p in pairs[1:]] == [False, True, True]

    def test_no_siblings(self):
        pairs = determine_merge_pairs([np.zeros((1, 1))], 0.5, [1])
        assert not pairs[0].any()


class TestRanking:
    """Tests for candidate ranking."""

    def test_candidates_from_deltas(self):
        deltas = sibling_deltas([0.0, 1.5])
        rule_counts = [np.zeros((1, 3), dtype=int), np.zeros((2, 3), dtype=int), np.array([[0, 0, 0], [-3, -1, -2]])]
        candidates = merge_candidates(deltas, [1, 2, 2], rule_counts)
        assert len(candidates) == 1
        c = candidates[0]
        assert (c.state, c.substate1, c.substate2) == (2, 0, 1)
        assert c.total_rule_count_delta() == -6

    def test_accuracy_only(self):
        candidates = [MergeCandidate(1, 0, 1, 2.0), MergeCandidate(2, 0, 1, 1.0), MergeCandidate(3, 0, 1, 3.0)]
        for c, speed in zip(candidates, [-5, 0, -10]):
            c.estimated_speed_delta = speed
        ranked = rank_candidates(candidates, speed_weight=0.0)
        assert [c.state for c in ranked] == [2, 1, 3]

    def test_speed_only(self):
        candidates = [MergeCandidate(1, 0, 1, 2.0), MergeCandidate(2, 0, 1, 1.0), MergeCandidate(3, 0, 1, 3.0)]
        for c, speed in zip(candidates, [-5, 0, -10]):
            c.estimated_speed_delta = speed
        ranked = rank_candidates(candidates, speed_weight=1.0)
        assert [c.state for c in ranked] == [3, 1, 2]
        assert ranked[0].speed_rank == 1

    def test_empty(self):
        assert rank_candidates([]) == []


class TestSelectMergePairs:

    def test_unknown_ranking(self, treebank, rng):
        grammar, lexicon, _, _ = split_model(treebank, rng)
        deltas = [np.zeros((n, n)) for n in grammar.num_substates]
        with pytest.raises(ValueError):
            select_merge_pairs(grammar, lexicon, deltas, 0.5, ranking="fastest")

    def test_bad_fraction(self, treebank, rng):
        grammar, lexicon, _, _ = split_model(treebank, rng)
        deltas = [np.zeros((n, n)) for n in grammar.num_substates]
        with pytest.raises(ValueError):
            select_merge_pairs(grammar, lexicon, deltas, 1.5)

    def test_total_rule_count(self, treebank, rng):
        """The rule-count ranking merges round(fraction * candidates) pairs."""
        grammar, lexicon, _, _ = split_model(treebank, rng)
        n = len(grammar.num_substates) - 1
        deltas = sibling_deltas(np.linspace(0.1, 1.0, n))
        pairs = select_merge_pairs(grammar, lexicon, deltas, 0.5, ranking=TOTAL_RULE_COUNT)
        assert sum(int(p.sum()) for p in pairs) == int(round(n * 0.5))

    def test_modeled(self, treebank, rng):
        grammar, lexicon, _, trees = split_model(treebank, rng, randomness=1.0)
        weights = compute_merge_weights(grammar, lexicon, trees)
        n = len(grammar.num_substates) - 1
        deltas = sibling_deltas(np.linspace(0.1, 1.0, n))
        pairs = select_merge_pairs(grammar, lexicon, deltas, 0.25, ranking=MODELED, merge_weights=weights,
                                   coefficients={"row_density": 1.0, "lexical": 0.5})
        assert sum(int(p.sum()) for p in pairs) == int(round(n * 0.25))

    def test_likelihood(self, treebank, rng):
        grammar, lexicon, _, _ = split_model(treebank, rng)
        n = len(grammar.num_substates) - 1
        deltas = sibling_deltas(np.arange(1, n + 1, dtype=float))
        pairs = select_merge_pairs(grammar, lexicon, deltas, 0.0, ranking=LIKELIHOOD)
        assert sum(int(p.sum()) for p in pairs) == 1
        assert pairs[1][0, 1]


class TestMergeStatistics:
    """Merge weights and likelihood deltas from parsed trees."""

    def test_merge_weights_normalized(self, treebank, rng):
        grammar, lexicon, numberer, trees = split_model(treebank, rng, randomness=1.0)
        weights = compute_merge_weights(grammar, lexicon, trees)
        for label in ['S', 'NP', 'VP', 'NN']:
            assert weights[numberer.number(label)].sum() == pytest.approx(1.0)
        assert all(t.label.inside is None for t in trees)

    def test_identical_siblings_lose_nothing(self, treebank, rng):
        """Without noise sibling substates are identical, so merging them is free."""
        grammar, lexicon, numberer, trees = split_model(treebank, rng, randomness=0.0)
        weights = compute_merge_weights(grammar, lexicon, trees)
        deltas = compute_merge_likelihood_deltas(grammar, lexicon, weights, trees)
        for state, n in enumerate(grammar.num_substates):
            assert deltas[state].shape == (n, n)
            for i in range(0, n - 1, 2):
                assert deltas[state][i, i + 1] == pytest.approx(0.0, abs=1e-9)


class TestDoTheMerges:

    def test_merge_all(self, treebank, rng):
        grammar, lexicon, _, trees = split_model(treebank, rng, randomness=1.0)
        weights = compute_merge_weights(grammar, lexicon, trees)
        pairs = [np.zeros((n, n), dtype=bool) for n in grammar.num_substates]
        for p in pairs[1:]:
            p[0, 1] = True
        merged_grammar, merged_lexicon = do_the_merges(grammar, lexicon, pairs, weights)
        assert merged_grammar.num_substates == [1] * len(grammar.num_substates)
        assert merged_lexicon.num_substates == merged_grammar.num_substates
        for label_sum in merged_grammar.parent_sums()[1:]:
            assert label_sum.tolist() == pytest.approx([1.0]) or label_sum.tolist() == [0.0]

    def test_overlapping_pairs_merged_in_rounds(self, treebank, rng):
        """Pairs (0,1) and (1,2) merge three substates into one."""
        grammar, lexicon, numberer, trees = split_model(treebank, rng, randomness=1.0, splits=2)
        weights = [np.full(n, 1.0 / n) for n in grammar.num_substates]
        s = numberer.number('S')
        pairs = [np.zeros((n, n), dtype=bool) for n in grammar.num_substates]
        pairs[s][0, 1] = True
        pairs[s][1, 2] = True
        merged_grammar, merged_lexicon = do_the_merges(grammar, lexicon, pairs, weights)
        assert merged_grammar.num_substates[s] == 2
        assert merged_lexicon.num_substates[s] == 2

    def test_statistics_logged(self, treebank, rng, caplog):
        caplog.set_level(logging.INFO)
        grammar, lexicon, _, _ = split_model(treebank, rng)
        merged = grammar.merge_states([np.zeros((n, n), dtype=bool) for n in grammar.num_substates],
                                      [np.full(n, 1.0 / n) for n in grammar.num_substates])
        print_merging_statistics(grammar, merged)
        assert "Substates: %d before merging" % grammar.total_substates() in caplog.text
