"""Choosing which split substates to merge back together.

After a split, every state's substates come in sibling pairs (2k, 2k+1).
The likelihood delta of a pair approximates how much training-set log
likelihood is lost by merging it, computed from the inside and outside
scores of every node labelled with the pair's state. The pairs that lose
least are merged.
"""

import logging
import math

import numpy as np
from scipy.stats import rankdata

from array_parser import ArrayParser
from grammar import calculate_merge_arrays, fix_merge_weights
from trees import deallocate_tree

LIKELIHOOD = "likelihood"
TOTAL_RULE_COUNT = "total_rule_count"
MODELED = "modeled"
MERGE_RANKINGS = (LIKELIHOOD, TOTAL_RULE_COUNT, MODELED)

# Coefficients of the modeled inference-speed estimate.
DEFAULT_COEFFICIENTS = {
    "binary": 1.0,
    "unary": 1.0,
    "lexical": 0.0,
    "row_density": 0.0,
    "column_density": 0.0,
}


class MergeCandidate:
    """One sibling substate pair and what merging it is expected to cost and save."""

    def __init__(self, state, substate1, substate2, likelihood_delta=0.0,
                 binary_rule_count_delta=0, unary_rule_count_delta=0, lexical_rule_count_delta=0):
        self.state = state
        self.substate1 = substate1
        self.substate2 = substate2
        self.likelihood_delta = likelihood_delta
        self.binary_rule_count_delta = binary_rule_count_delta
        self.unary_rule_count_delta = unary_rule_count_delta
        self.lexical_rule_count_delta = lexical_rule_count_delta
        self.estimated_speed_delta = 0.0
        self.accuracy_rank = 0
        self.speed_rank = 0
        self.combined_rank = 0.0

    def total_rule_count_delta(self):
        return self.binary_rule_count_delta + self.unary_rule_count_delta + self.lexical_rule_count_delta

    def __repr__(self):
        return "MergeCandidate(%d, %d, %d, likelihood=%.4f, rules=%d, speed=%.2f)" % (
            self.state, self.substate1, self.substate2, self.likelihood_delta,
            self.total_rule_count_delta(), self.estimated_speed_delta)


# Merge weights

def tally_merge_weights(tree, merge_weights):
    """Add each node's normalized substate posteriors to merge_weights[state]."""
    for node in tree.pre_order():
        if node.is_leaf():
            continue
        label = node.label
        posteriors = label.inside * label.outside
        total = np.sum(posteriors)
        if total == 0:
            total = 1.0
        merge_weights[label.state][:label.num_substates] += posteriors / total


def normalize_merge_weights(merge_weights):
    for weights in merge_weights:
        total = np.sum(weights)
        if total > 0:
            weights /= total


def compute_merge_weights(grammar, lexicon, trees):
    """Probability of each substate given its state, estimated over the training trees.

    Returns:
        list indexed by state of substate weight vectors, each summing to 1
        (or all zero for a state never seen).
    """
    parser = ArrayParser(grammar, lexicon)
    merge_weights = [np.zeros(n) for n in grammar.num_substates]
    likelihood = 0.0
    for i, tree in enumerate(trees):
        parser.do_inside_outside_scores(tree, False)
        ll = parser.tree_log_likelihood(tree)
        if math.isinf(ll) or math.isnan(ll):
            logging.warning("Training sentence %d is given -inf log likelihood!", i)
        else:
            likelihood += ll
            tally_merge_weights(tree, merge_weights)
        deallocate_tree(tree)
    logging.info("Training corpus LL before merging: %f", likelihood)
    normalize_merge_weights(merge_weights)
    return merge_weights


# Likelihood deltas

def tally_merge_likelihood_deltas(tree, deltas, merge_weights):
    """Add one tree's log likelihood loss for merging each sibling pair.

    At a node, the separated likelihood is sum_i in_i * out_i. Merging
    (i, j) replaces the two terms by the weighted mixture of their inside
    scores times the sum of their outside scores. The scale exponent is
    shared by all substates of a node, so it cancels in the ratio.
    """
    for node in tree.pre_order():
        if node.is_leaf():
            continue
        label = node.label
        n = label.num_substates
        if n < 2:
            continue
        inside = label.inside
        outside = label.outside
        separated = inside * outside
        separated_sum = np.sum(separated)
        if separated_sum == 0:
            continue
        weights = merge_weights[label.state]
        i = np.arange(0, n - 1, 2)
        j = i + 1
        weight_sum = weights[i] + weights[j]
        weight_sum[weight_sum == 0] = 1.0
        combined = (inside[i] * weights[i] + inside[j] * weights[j]) / weight_sum * (outside[i] + outside[j])
        combined_sum = separated_sum - separated[i] - separated[j] + combined
        ok = (combined != 0) & (combined_sum > 0)
        deltas[label.state][i[ok], j[ok]] += np.log(separated_sum / combined_sum[ok])


def compute_merge_likelihood_deltas(grammar, lexicon, merge_weights, trees):
    """Per state, an [i][j] table of the corpus log likelihood lost by merging (i, j)."""
    parser = ArrayParser(grammar, lexicon)
    deltas = [np.zeros((n, n)) for n in grammar.num_substates]
    for tree in trees:
        parser.do_inside_outside_scores(tree, False)
        ll = parser.tree_log_likelihood(tree)
        if not math.isinf(ll) and not math.isnan(ll):
            tally_merge_likelihood_deltas(tree, deltas, merge_weights)
        deallocate_tree(tree)
    return deltas


# Selection

def _symbol(numberer, state):
    return numberer.symbol(state) if numberer is not None else str(state)


def determine_merge_pairs(deltas, merge_fraction, num_substates, numberer=None):
    """Mark for merging the sibling pairs whose loss is within the lowest merge_fraction.

    Pairs with a delta of exactly 0 (never observed) are not candidates.
    """
    merge_these_pairs = [np.zeros((n, n), dtype=bool) for n in num_substates]
    siblings = []
    for state, n in enumerate(num_substates):
        for i in range(0, n - 1, 2):
            if deltas[state][i, i + 1] != 0:
                siblings.append(deltas[state][i, i + 1])
    if not siblings:
        logging.info("No substate siblings to merge.")
        return merge_these_pairs

    siblings.sort()
    logging.info("Going to merge %d%% of the substate siblings.", int(merge_fraction * 100))
    threshold = siblings[min(int(len(siblings) * merge_fraction), len(siblings) - 1)]
    logging.info("Setting the threshold for siblings to %g.", threshold)

    merged = 0
    for state, n in enumerate(num_substates):
        for i in range(0, n - 1, 2):
            delta = deltas[state][i, i + 1]
            if delta != 0 and delta <= threshold:
                merge_these_pairs[state][i, i + 1] = True
                merged += 1
    logging.info("Merging %d siblings.", merged)
    _log_merges(merge_these_pairs, deltas, numberer)
    return merge_these_pairs


def _log_merges(merge_these_pairs, deltas, numberer):
    for state, pairs in enumerate(merge_these_pairs):
        merges = ["(%d,%d) at cost %g" % (i, j, deltas[state][i, j]) for i, j in zip(*np.nonzero(pairs))]
        if merges:
            logging.info("State %s. Merging pairs %s.", _symbol(numberer, state), ", ".join(merges))


def merge_candidates(deltas, num_substates, rule_count_deltas=None):
    """A MergeCandidate for every observed sibling pair."""
    candidates = []
    for state, n in enumerate(num_substates):
        for i in range(0, n - 1, 2):
            delta = deltas[state][i, i + 1]
            if delta == 0:
                continue
            candidate = MergeCandidate(state, i, i + 1, float(delta))
            if rule_count_deltas is not None:
                binary, unary, lexical = rule_count_deltas[state][i + 1]
                candidate.binary_rule_count_delta = int(binary)
                candidate.unary_rule_count_delta = int(unary)
                candidate.lexical_rule_count_delta = int(lexical)
            candidates.append(candidate)
    return candidates


def estimate_speed_deltas(candidates, grammar, lexicon, ranking, merge_weights=None, coefficients=None):
    """Fill in estimated_speed_delta for each candidate; lower means a faster grammar."""
    if ranking == TOTAL_RULE_COUNT:
        for candidate in candidates:
            candidate.estimated_speed_delta = float(candidate.total_rule_count_delta())
        return

    c = dict(DEFAULT_COEFFICIENTS)
    if coefficients:
        c.update(coefficients)
    row_density, column_density = grammar.median_row_and_column_densities()
    lexical_rules = lexicon.total_rules(lexicon.threshold) if c["lexical"] else 0
    for candidate in candidates:
        speed = c["binary"] * candidate.binary_rule_count_delta + c["unary"] * candidate.unary_rule_count_delta
        if c["row_density"] or c["column_density"]:
            merged = grammar.merge(candidate, merge_weights)
            merged_row, merged_column = merged.median_row_and_column_densities()
            speed += c["row_density"] * (merged_row - row_density)
            speed += c["column_density"] * (merged_column - column_density)
        if c["lexical"]:
            merged_lexicon = lexicon.merge(candidate)
            speed += c["lexical"] * (merged_lexicon.total_rules(lexicon.threshold) - lexical_rules)
        candidate.estimated_speed_delta = speed


def rank_candidates(candidates, speed_weight=0.5):
    """Combine ordinal accuracy (likelihood loss) and speed ranks; best first."""
    if not candidates:
        return []
    accuracy = rankdata([c.likelihood_delta for c in candidates], method='ordinal')
    speed = rankdata([c.estimated_speed_delta for c in candidates], method='ordinal')
    for candidate, a, s in zip(candidates, accuracy, speed):
        candidate.accuracy_rank = int(a)
        candidate.speed_rank = int(s)
        candidate.combined_rank = (1 - speed_weight) * a + speed_weight * s
    return sorted(candidates, key=lambda c: (c.combined_rank, c.accuracy_rank))


def select_merge_pairs(grammar, lexicon, deltas, merge_fraction, ranking=LIKELIHOOD, merge_weights=None,
                       rule_count_deltas=None, speed_weight=0.5, coefficients=None):
    """Which sibling pairs to merge.

    Args:
        grammar: the split grammar.
        lexicon: the split lexicon.
        deltas: likelihood deltas from compute_merge_likelihood_deltas.
        merge_fraction: fraction of the candidate pairs to merge.
        ranking: one of MERGE_RANKINGS.
        merge_weights: substate weights, needed by the modeled ranking.
        rule_count_deltas: from Grammar.estimate_merge_rule_count_deltas;
            computed here if a rule-count ranking needs them.
        speed_weight: weight of the speed rank against the accuracy rank.
        coefficients: overrides for DEFAULT_COEFFICIENTS.

    Returns:
        per state, a boolean [i][j] table of pairs to merge.
    """
    if ranking not in MERGE_RANKINGS:
        raise ValueError("Unknown merge ranking %r; expected one of %s" % (ranking, ", ".join(MERGE_RANKINGS)))
    if not 0 <= merge_fraction <= 1:
        raise ValueError("Merge fraction must be between 0 and 1, not %g" % merge_fraction)
    if ranking == LIKELIHOOD:
        return determine_merge_pairs(deltas, merge_fraction, grammar.num_substates, grammar.numberer)

    if rule_count_deltas is None:
        rule_count_deltas = grammar.estimate_merge_rule_count_deltas(lexicon)
    candidates = merge_candidates(deltas, grammar.num_substates, rule_count_deltas)
    estimate_speed_deltas(candidates, grammar, lexicon, ranking, merge_weights, coefficients)
    ranked = rank_candidates(candidates, speed_weight)
    n_merges = int(round(len(ranked) * merge_fraction))
    logging.info("Ranking %d candidates by %s; merging %d.", len(ranked), ranking, n_merges)

    merge_these_pairs = [np.zeros((n, n), dtype=bool) for n in grammar.num_substates]
    for candidate in ranked[:n_merges]:
        logging.debug("Merging %r", candidate)
        merge_these_pairs[candidate.state][candidate.substate1, candidate.substate2] = True
    _log_merges(merge_these_pairs, deltas, grammar.numberer)
    return merge_these_pairs


# Merging

def do_the_merges(grammar, lexicon, merge_these_pairs, merge_weights):
    """Merge the marked pairs in grammar and lexicon.

    Pairs that overlap are merged over several rounds, renumbering the
    remaining pairs and the merge weights after each one.

    Returns:
        (merged grammar, merged lexicon)
    """
    pairs = [np.array(p, dtype=bool) for p in merge_these_pairs]
    weights = [np.array(w, dtype=float) for w in merge_weights]
    while any(np.any(p) for p in pairs):
        this_round = []
        for p in pairs:
            chosen = np.zeros_like(p)
            decided = np.zeros(len(p), dtype=bool)
            for i, j in zip(*np.nonzero(p)):
                if not decided[i] and not decided[j]:
                    chosen[i, j] = True
                decided[i] = decided[j] = True
            this_round.append(chosen)
        remaining = [p & ~chosen for p, chosen in zip(pairs, this_round)]

        old_num_substates = grammar.num_substates
        grammar = grammar.merge_states(this_round, weights)
        lexicon = lexicon.merge_states(this_round, weights)
        weights = fix_merge_weights(this_round, weights, old_num_substates)
        pairs = _renumber_pairs(remaining, this_round, old_num_substates, grammar.num_substates)
    return grammar, lexicon


def _renumber_pairs(pairs, merged, old_num_substates, new_num_substates):
    _, mapping, _ = calculate_merge_arrays(merged, old_num_substates)
    result = []
    for state, p in enumerate(pairs):
        renumbered = np.zeros((new_num_substates[state], new_num_substates[state]), dtype=bool)
        for i, j in zip(*np.nonzero(p)):
            a, b = mapping[state][i], mapping[state][j]
            if a != b:
                renumbered[min(a, b), max(a, b)] = True
        result.append(renumbered)
    return result


def print_merging_statistics(grammar, new_grammar, numberer=None):
    if numberer is None:
        numberer = grammar.numberer
    for state, (before, after) in enumerate(zip(grammar.num_substates, new_grammar.num_substates)):
        logging.info("State %s had %d substates and now has %d.", _symbol(numberer, state), before, after)
    logging.info("Substates: %d before merging, %d after.", grammar.total_substates(),
                 new_grammar.total_substates())
