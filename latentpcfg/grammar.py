"""Latent-annotation grammar: binary and unary rules over substates.

A Grammar is built by tallying expected rule counts from parsed training
trees into its GrammarCounts, then calling optimize() to normalize them into
rule probabilities. Splitting and merging return new Grammar objects; the
source grammar is left untouched.
"""

import logging
import math

import numpy as np

import scaling
from rules import BinaryRule, UnaryRule
from smoothing import NoSmoothing, extend_split_trees, initial_split_trees, prune_split_trees
from utility import MalformedTreeException


def calculate_merge_arrays(merge_these_pairs, num_substates):
    """Work out how substates are renumbered by a merge.

    Args:
        merge_these_pairs: per state, a boolean [i][j] table (i < j) marking
            substate pairs to merge, or None for states left alone.
        num_substates: current substate counts.

    Returns:
        (new_num_substates, mapping, partners) where mapping[state][i] is the
        new index of old substate i and partners[state][i] lists the old
        substates merged with i, the first listed being the one that
        survives.
    """
    new_num_substates = []
    mapping = []
    partners = []
    for state, n in enumerate(num_substates):
        pairs = merge_these_pairs[state] if merge_these_pairs is not None else None
        merge_target = [-1] * n
        state_mapping = np.zeros(n, dtype=int)
        state_partners = [None] * n
        count = 0
        for j in range(n):
            if merge_target[j] != -1:
                state_mapping[j] = merge_target[j]
                continue
            state_partners[j] = [j]
            state_mapping[j] = count
            count += 1
            if pairs is None:
                continue
            # pairs only: j is not itself merged into anything earlier
            for k in range(j + 1, n):
                if pairs[j][k]:
                    merge_target[k] = state_mapping[j]
                    state_partners[j] = [j, k]
                    state_partners[k] = state_partners[j]
        new_num_substates.append(count)
        mapping.append(state_mapping)
        partners.append(state_partners)
    return new_num_substates, mapping, partners


def fix_merge_weights(merge_these_pairs, merge_weights, num_substates):
    """Merge weights renumbered to match the substates after a merge."""
    new_num_substates, mapping, _ = calculate_merge_arrays(merge_these_pairs, num_substates)
    result = []
    for state, weights in enumerate(merge_weights):
        merged = np.zeros(new_num_substates[state])
        np.add.at(merged, mapping[state], weights[:num_substates[state]])
        result.append(merged)
    return result


def is_dangerous(x):
    return x == 0 or math.isinf(x) or math.isnan(x)


class GrammarCounts:
    """Fractional rule counts gathered in the E-step.

    Cells are keyed exactly like the rule score tables, so a cell exists
    only if some tree tallied into it.
    """

    def __init__(self):
        self.binary = {}
        self.unary = {}

    def add_binary(self, key, l, r, values):
        cells = self.binary.setdefault(key, {})
        vec = cells.get((l, r))
        if vec is None:
            cells[(l, r)] = np.array(values, dtype=float)
        else:
            vec += values

    def add_unary(self, key, c, values):
        cells = self.unary.setdefault(key, {})
        vec = cells.get(c)
        if vec is None:
            cells[c] = np.array(values, dtype=float)
        else:
            vec += values

    def add(self, other):
        for key, cells in other.binary.items():
            for (l, r), vec in cells.items():
                self.add_binary(key, l, r, vec)
        for key, cells in other.unary.items():
            for c, vec in cells.items():
                self.add_unary(key, c, vec)

    def is_empty(self):
        return not self.binary and not self.unary

    def parent_totals(self, num_substates):
        """Total count of each (state, substate) as a parent, over all rules."""
        totals = [np.zeros(n) for n in num_substates]
        for (p, _, _), cells in self.binary.items():
            for vec in cells.values():
                totals[p] += vec
        for (p, _), cells in self.unary.items():
            for vec in cells.values():
                totals[p] += vec
        return totals

    def jitter(self, rng, randomness):
        for cells in list(self.binary.values()) + list(self.unary.values()):
            for vec in cells.values():
                vec += rng.random(len(vec)) * randomness


class Grammar:

    def __init__(self, num_substates, smoother=None, min_rule_probability=1e-11, numberer=None,
                 split_trees=None):
        self.num_substates = list(num_substates)
        self.num_states = len(self.num_substates)
        self.smoother = smoother if smoother is not None else NoSmoothing()
        self.min_rule_probability = min_rule_probability
        self.numberer = numberer
        if split_trees is None:
            split_trees = initial_split_trees(self.num_substates)
        self.split_trees = split_trees
        self.counts = GrammarCounts()
        self.binary_rules = {}
        self.unary_rules = {}
        self._init_indexes()

    def _init_indexes(self):
        n = self.num_states
        self.binary_rules_with_parent = [[] for _ in range(n)]
        self.binary_rules_with_left = [[] for _ in range(n)]
        self.binary_rules_with_right = [[] for _ in range(n)]
        self.unary_rules_with_parent = [[] for _ in range(n)]
        self.unary_rules_with_child = [[] for _ in range(n)]
        self.closed_sum_rules = {}
        self.closed_viterbi_rules = {}
        self.closed_sum_paths = {}
        self.closed_viterbi_paths = {}

    def copy_grammar(self, copy_rules=False, num_substates=None):
        """A grammar with the same settings and split trees.

        Args:
            copy_rules: also deep-copy the rules and the unary closures.
            num_substates: substate counts of the new grammar, if different.
        """
        if num_substates is None:
            num_substates = self.num_substates
        new = Grammar(num_substates, self.smoother, self.min_rule_probability, self.numberer,
                      self.split_trees)
        if copy_rules:
            for rule in self.binary_rules.values():
                new.add_binary(rule.copy())
            for rule in self.unary_rules.values():
                new.add_unary(rule.copy())
            new.compute_pairs_of_unaries()
        return new

    def set_smoother(self, smoother):
        self.smoother = smoother

    def add_binary(self, rule):
        self.binary_rules[rule.key()] = rule
        self.binary_rules_with_parent[rule.parent].append(rule)
        self.binary_rules_with_left[rule.left].append(rule)
        self.binary_rules_with_right[rule.right].append(rule)

    def add_unary(self, rule):
        self.unary_rules[rule.key()] = rule
        self.unary_rules_with_parent[rule.parent].append(rule)
        self.unary_rules_with_child[rule.child].append(rule)

    def _clear_rules(self):
        self.binary_rules = {}
        self.unary_rules = {}
        self._init_indexes()

    # Lookup

    def get_binary_rule(self, parent, left, right):
        """The rule, or an empty one (every score 0) if the grammar lacks it."""
        rule = self.binary_rules.get((parent, left, right))
        if rule is None:
            return BinaryRule(parent, left, right)
        return rule

    def get_unary_rule(self, parent, child):
        rule = self.unary_rules.get((parent, child))
        if rule is None:
            return UnaryRule(parent, child)
        return rule

    def get_binary_score(self, parent, left, right):
        """Dense [left][right][parent] scores, all zero for an absent rule."""
        return self.get_binary_rule(parent, left, right).dense(self.num_substates)

    def get_unary_score(self, parent, child):
        """Dense [child][parent] scores, all zero for an absent rule."""
        return self.get_unary_rule(parent, child).dense(self.num_substates)

    def best_intermediate_state(self, parent, child, viterbi=True):
        """State in the middle of the best two-step unary chain, or -1 for a direct rule."""
        paths = self.closed_viterbi_paths if viterbi else self.closed_sum_paths
        return paths.get((parent, child))

    # Counting

    def count_unsplit_tree(self, tree):
        """Add one count for every production of a tree whose states are all unsplit."""
        if tree.is_leaf() or tree.is_preterminal():
            return
        parent = tree.label.state
        children = tree.children
        if len(children) == 1:
            self.counts.add_unary((parent, children[0].label.state), 0, np.ones(1))
        elif len(children) == 2:
            key = (parent, children[0].label.state, children[1].label.state)
            self.counts.add_binary(key, 0, 0, np.ones(1))
        else:
            raise MalformedTreeException("Malformed tree: more than two children")
        for child in children:
            self.count_unsplit_tree(child)

    def tally_uninitialized_tree(self, tree, rng=None, randomness=0.0):
        """Count every substate combination of every production in a tree.

        Each parent substate receives a total count of one per production,
        spread evenly over the child substate combinations and optionally
        perturbed by up to randomness percent.
        """
        if tree.is_leaf() or tree.is_preterminal():
            return
        parent = tree.label
        children = tree.children
        if len(children) > 2:
            raise MalformedTreeException("Malformed tree: more than two children")
        child_sizes = [c.label.num_substates for c in children]
        share = 1.0 / int(np.prod(child_sizes))

        def weights():
            w = np.full(parent.num_substates, share)
            if rng is not None and randomness:
                w *= 1.0 + rng.random(parent.num_substates) * randomness / 100.0
            return w

        if len(children) == 1:
            key = (parent.state, children[0].label.state)
            for c in range(child_sizes[0]):
                self.counts.add_unary(key, c, weights())
        else:
            key = (parent.state, children[0].label.state, children[1].label.state)
            for l in range(child_sizes[0]):
                for r in range(child_sizes[1]):
                    self.counts.add_binary(key, l, r, weights())
        for child in children:
            self.tally_uninitialized_tree(child, rng, randomness)

    def tally_tree(self, tree, old_grammar):
        """E-step: add the expected rule counts of a parsed tree.

        The tree must carry inside and outside scores computed with
        old_grammar; counts are posterior rule probabilities, with the
        scaling exponents of the parent, the children and the whole tree
        reconciled.

        Returns:
            False if the tree has zero probability and was skipped.
        """
        root = tree.label
        tree_score = root.inside[0]
        if tree_score == 0:
            logging.debug("Skipping a 0-probability tree")
            return False
        if tree.is_leaf() or tree.is_preterminal():
            return True
        self._tally_node(tree, old_grammar, tree_score, root.inside_scale)
        return True

    def _tally_node(self, tree, old_grammar, tree_score, tree_scale):
        parent = tree.label
        children = tree.children
        if len(children) == 1:
            child = children[0].label
            key = (parent.state, child.state)
            rule = old_grammar.unary_rules.get(key)
            if rule is not None:
                factor = scaling.unscale(1.0 / tree_score, scaling.calc_scale(
                    [parent.outside_scale, child.inside_scale, -tree_scale]))
                for c, vec in rule.scores.items():
                    child_inside = child.inside[c]
                    if child_inside == 0:
                        continue
                    self.counts.add_unary(key, c, vec * parent.outside * (child_inside * factor))
        elif len(children) == 2:
            left = children[0].label
            right = children[1].label
            key = (parent.state, left.state, right.state)
            rule = old_grammar.binary_rules.get(key)
            if rule is not None:
                factor = scaling.unscale(1.0 / tree_score, scaling.calc_scale(
                    [parent.outside_scale, left.inside_scale, right.inside_scale, -tree_scale]))
                for (l, r), vec in rule.scores.items():
                    left_inside = left.inside[l]
                    if left_inside == 0:
                        continue
                    right_inside = right.inside[r]
                    if right_inside == 0:
                        continue
                    self.counts.add_binary(key, l, r, vec * parent.outside * (left_inside * right_inside * factor))
        else:
            raise MalformedTreeException("Malformed tree: more than two children")
        for child in children:
            if not child.is_leaf() and not child.is_preterminal():
                self._tally_node(child, old_grammar, tree_score, tree_scale)

    def add_counts(self, counts):
        self.counts.add(counts)

    # M-step

    def optimize(self, randomness=0.0, rng=None):
        """Turn the tallied counts into rule probabilities.

        Adds uniform random jitter of up to randomness to every count (only
        used when inducing the first grammar), normalizes, smooths and
        rebuilds the unary closures.
        """
        if randomness > 0:
            self.counts.jitter(rng, randomness)
        self.normalize()
        self.smooth()
        self.compute_pairs_of_unaries()

    def normalize(self):
        """Rule probabilities from counts, divided by the parent's total count.

        Probabilities below min_rule_probability, or non-finite ones, are
        zeroed and the survivors renormalized so every parent substate still
        sums to one.
        """
        totals = self.counts.parent_totals(self.num_substates)
        self._clear_rules()
        threshold = self.min_rule_probability

        def probabilities(vec, total):
            with np.errstate(divide='ignore', invalid='ignore'):
                probs = np.where(total > 0, vec / total, 0.0)
            probs[~np.isfinite(probs) | (probs < threshold)] = 0
            return probs

        for key, cells in self.counts.binary.items():
            scores = {}
            for cell, vec in cells.items():
                probs = probabilities(vec, totals[key[0]])
                if np.any(probs > 0):
                    scores[cell] = probs
            if scores:
                self.add_binary(BinaryRule(key[0], key[1], key[2], scores))
        for key, cells in self.counts.unary.items():
            scores = {}
            for cell, vec in cells.items():
                probs = probabilities(vec, totals[key[0]])
                if np.any(probs > 0):
                    scores[cell] = probs
            if scores:
                self.add_unary(UnaryRule(key[0], key[1], scores))

        sums = self.parent_sums()
        for rule in list(self.binary_rules.values()) + list(self.unary_rules.values()):
            total = sums[rule.parent]
            for vec in rule.scores.values():
                np.divide(vec, total, out=vec, where=total > 0)
        logging.debug("Normalized %d binary and %d unary rules", len(self.binary_rules), len(self.unary_rules))

    def parent_sums(self):
        """Sum of rule probabilities leaving each (state, substate)."""
        sums = [np.zeros(n) for n in self.num_substates]
        for rule in self.binary_rules.values():
            for vec in rule.scores.values():
                sums[rule.parent] += vec
        for rule in self.unary_rules.values():
            for vec in rule.scores.values():
                sums[rule.parent] += vec
        return sums

    def smooth(self):
        for rule in list(self.binary_rules.values()) + list(self.unary_rules.values()):
            for cell, vec in rule.scores.items():
                rule.scores[cell] = self.smoother.smooth_vector(rule.parent, vec)

    def compute_pairs_of_unaries(self):
        """Closures over unary chains of length one and two.

        For every (parent, child) pair with parent != child, the sum closure
        adds the direct rule and every two-step chain through an
        intermediate state; the Viterbi closure keeps the best of them per
        substate pair. Both record which intermediate state realizes the
        largest contribution (-1 for the direct rule). Each state also gets
        an identity self-loop in the Viterbi closure.
        """
        self.closed_sum_rules = {}
        self.closed_viterbi_rules = {}
        self.closed_sum_paths = {}
        self.closed_viterbi_paths = {}
        ns = self.num_substates
        for state in range(self.num_states):
            self.closed_viterbi_rules[(state, state)] = _unary_from_dense(state, state, np.eye(ns[state]))

        for parent in range(self.num_states):
            for child in range(self.num_states):
                if parent == child:
                    continue
                sum_scores = np.zeros((ns[child], ns[parent]))
                max_scores = np.zeros((ns[child], ns[parent]))
                max_sum_score = -1.0
                best_sum = -1
                best_max = -2
                for pr in self.unary_rules_with_parent[parent]:
                    intermediate = pr.child
                    if intermediate == child:
                        scores = pr.dense(ns)
                        candidates = scores
                        via = -1
                    else:
                        cr = self.unary_rules.get((intermediate, child))
                        if cr is None:
                            continue
                        upper = pr.dense(ns)
                        lower = cr.dense(ns)
                        # [child][intermediate] x [intermediate][parent]
                        scores = lower @ upper
                        candidates = np.max(lower[:, :, None] * upper[None, :, :], axis=1)
                        via = intermediate
                    sum_scores += scores
                    better = candidates > max_scores
                    if np.any(better):
                        max_scores[better] = candidates[better]
                        best_max = via
                    total = float(np.sum(scores))
                    if total > max_sum_score:
                        max_sum_score = total
                        best_sum = via
                if max_sum_score > -1:
                    self.closed_sum_rules[(parent, child)] = _unary_from_dense(parent, child, sum_scores)
                    self.closed_sum_paths[(parent, child)] = best_sum
                if best_max > -2:
                    self.closed_viterbi_rules[(parent, child)] = _unary_from_dense(parent, child, max_scores)
                    self.closed_viterbi_paths[(parent, child)] = best_max

    # Splitting and merging

    def split_all_states(self, randomness, rng):
        """New grammar with every substate split in two (ROOT excepted).

        Args:
            randomness: percentage of each daughter score perturbed, with
                opposite signs on sibling daughters.
            rng: numpy Generator supplying the perturbations.
        """
        new_num_substates = [1] + [2 * n for n in self.num_substates[1:]]
        new = self.copy_grammar(num_substates=new_num_substates)
        for rule in self.binary_rules.values():
            new.add_binary(rule.split_rule(self.num_substates, new_num_substates, rng, randomness))
        for rule in self.unary_rules.values():
            new.add_unary(rule.split_rule(self.num_substates, new_num_substates, rng, randomness))
        new.split_trees = extend_split_trees(self.split_trees, self.num_substates, new_num_substates)
        new.compute_pairs_of_unaries()
        return new

    def merge_states(self, merge_these_pairs, merge_weights):
        """New grammar with the marked substate pairs merged.

        Child substates of a merged pair have their scores summed. Parent
        substates are averaged, weighted by merge_weights (the relative
        frequency of each substate). Only cells present in this grammar are
        created in the new one.
        """
        return self._merge(merge_these_pairs, merge_weights, True)

    def merge(self, candidate, merge_weights):
        """New grammar merging only the candidate's pair. Split trees are not pruned."""
        pairs = [np.zeros((n, n), dtype=bool) for n in self.num_substates]
        pairs[candidate.state][candidate.substate1, candidate.substate2] = True
        return self._merge(pairs, merge_weights, False)

    def _merge(self, merge_these_pairs, merge_weights, update_split_trees):
        new_num_substates, mapping, partners = calculate_merge_arrays(merge_these_pairs, self.num_substates)
        parent_maps = [self._parent_merge_matrix(state, new_num_substates, mapping, partners, merge_weights)
                       for state in range(self.num_states)]
        new = self.copy_grammar(num_substates=new_num_substates)

        for rule in self.binary_rules.values():
            merged = BinaryRule(rule.parent, rule.left, rule.right)
            for (l, r), vec in rule.scores.items():
                cell = (int(mapping[rule.left][l]), int(mapping[rule.right][r]))
                merged.add_score(cell[0], cell[1], vec @ parent_maps[rule.parent])
            new.add_binary(merged)
        for rule in self.unary_rules.values():
            merged = UnaryRule(rule.parent, rule.child)
            for c, vec in rule.scores.items():
                merged.add_score(int(mapping[rule.child][c]), vec @ parent_maps[rule.parent])
            new.add_unary(merged)

        if update_split_trees:
            new.split_trees = prune_split_trees(self.split_trees, partners, mapping)
        new.compute_pairs_of_unaries()
        return new

    def _parent_merge_matrix(self, state, new_num_substates, mapping, partners, merge_weights):
        # old parent substate -> new parent substate, weighted within merged pairs
        n = self.num_substates[state]
        matrix = np.zeros((n, new_num_substates[state]))
        for i in range(n):
            group = partners[state][i]
            if len(group) == 2:
                weight_sum = merge_weights[state][group[0]] + merge_weights[state][group[1]]
                if is_dangerous(weight_sum):
                    weight_sum = 1.0
                matrix[i, mapping[state][i]] = merge_weights[state][i] / weight_sum
            else:
                matrix[i, mapping[state][i]] = 1.0
        return matrix

    # Statistics

    def total_substates(self):
        return sum(self.num_substates)

    def total_binary_rules(self, threshold=None):
        if threshold is None:
            threshold = self.min_rule_probability
        return sum(rule.rule_count(threshold) for rule in self.binary_rules.values())

    def total_unary_rules(self, threshold=None):
        if threshold is None:
            threshold = self.min_rule_probability
        return sum(rule.rule_count(threshold) for rule in self.unary_rules.values())

    def total_closed_unary_rules(self, threshold=None):
        """Unary rules as written out: the Viterbi closure without self-loops."""
        if threshold is None:
            threshold = self.min_rule_probability
        return sum(rule.rule_count(threshold) for rule in self.closed_viterbi_rules.values()
                   if not rule.is_self_loop())

    def total_rules(self, threshold=None):
        return self.total_binary_rules(threshold) + self.total_unary_rules(threshold)

    def estimate_merge_rule_count_deltas(self, lexicon):
        """Rule-count change from merging each odd substate into its even sibling.

        Exact for a single merge, an overestimate of the savings when many
        pairs are merged at once.

        Returns:
            list indexed by state of int arrays [substate][kind], kind being
            0 for binary, 1 for unary and 2 for lexical rules.
        """
        threshold = self.min_rule_probability
        deltas = [np.zeros((n, 3), dtype=int) for n in self.num_substates]

        for rule in self.binary_rules.values():
            for p, l, r, score in rule.entries():
                if score <= threshold:
                    continue
                if p % 2 == 1 and rule.get_score(p - 1, l, r) > 0:
                    deltas[rule.parent][p, 0] -= 1
                if l % 2 == 1 and rule.get_score(p, l - 1, r) > 0:
                    deltas[rule.left][l, 0] -= 1
                if r % 2 == 1 and rule.get_score(p, l, r - 1) > 0:
                    deltas[rule.right][r, 0] -= 1

        for rule in self.unary_rules.values():
            for p, c, score in rule.entries():
                if score <= threshold:
                    continue
                if p % 2 == 1 and rule.get_score(p - 1, c) > 0:
                    deltas[rule.parent][p, 1] -= 1
                if c % 2 == 1 and rule.get_score(p, c - 1) > 0:
                    deltas[rule.child][c, 1] -= 1

        lexical = lexicon.estimated_merge_rule_count_delta()
        for state in range(self.num_states):
            deltas[state][:, 2] = lexical[state][:self.num_substates[state]]
        return deltas

    def median_row_and_column_densities(self):
        """Median number of populated binary cells per parent (row) and per child pair (column)."""
        offsets = np.cumsum([0] + self.num_substates[:-1])
        rows = {}
        columns = {}
        for rule in self.binary_rules.values():
            for p, l, r, score in rule.entries():
                if score <= 0:
                    continue
                row = offsets[rule.parent] + p
                column = (offsets[rule.left] + l, offsets[rule.right] + r)
                rows[row] = rows.get(row, 0) + 1
                columns[column] = columns.get(column, 0) + 1
        if not rows:
            return 0.0, 0.0
        return float(np.median(list(rows.values()))), float(np.median(list(columns.values())))

    def to_lines(self, threshold=0.0):
        """Sorted text lines for the binary rules and the Viterbi unary closure."""
        lines = []
        for rule in self.binary_rules.values():
            lines.extend(rule.to_lines(self.numberer, threshold))
        for rule in self.closed_viterbi_rules.values():
            if rule.is_self_loop():
                continue
            lines.extend(rule.to_lines(self.numberer, threshold))
        return sorted(lines)

    def __getstate__(self):
        state = self.__dict__.copy()
        state["counts"] = GrammarCounts()
        return state


def _unary_from_dense(parent, child, dense):
    scores = {c: dense[c].copy() for c in range(dense.shape[0]) if np.any(dense[c])}
    return UnaryRule(parent, child, scores)
