"""Inside and outside scores over a fixed training tree.

The tree structure is given, so each node only has to sum over the
substates of its own production. Scores are rescaled per node (see
scaling.py) and the exponent is stored on the StateSet next to the vector.
"""

import logging

import numpy as np

import scaling
from utility import MalformedTreeException


class ArrayParser:

    def __init__(self, grammar, lexicon, state_classes=None):
        """
        Args:
            grammar: Grammar supplying the rule scores.
            lexicon: Lexicon scoring the words at the preterminals.
            state_classes: optional map from state id to the class used to
                index span scores. Defaults to the state id itself.
        """
        self.grammar = grammar
        self.lexicon = lexicon
        self.state_classes = state_classes

    def _span_factor(self, span_scores, state_set):
        cls = state_set.state if self.state_classes is None else self.state_classes[state_set.state]
        return span_scores[state_set.start][state_set.end][cls]

    def do_inside_outside_scores(self, tree, no_smoothing=False, debug_output=False, span_scores=None):
        """Fill in inside then outside scores for every node of tree."""
        if tree.is_leaf():
            return
        if tree.label.num_substates > 1:
            raise MalformedTreeException(
                "Top symbol %r has %d substates; it must be unsplit" % (tree.label, tree.label.num_substates))
        self.do_inside_scores(tree, no_smoothing, debug_output, span_scores)
        self.set_root_outside_score(tree)
        self.do_outside_scores(tree, False, span_scores)

    def set_root_outside_score(self, tree):
        tree.label.set_outside(np.ones(1), 0)

    def do_inside_scores(self, tree, no_smoothing=False, debug_output=False, span_scores=None):
        """Bottom-up pass. Zero child scores are skipped, never revisited."""
        if tree.is_leaf():
            return
        for child in tree.children:
            if not child.is_leaf():
                self.do_inside_scores(child, no_smoothing, debug_output, span_scores)

        parent = tree.label
        children = tree.children

        if tree.is_preterminal():
            scores = np.array(self.lexicon.score_state_set(children[0].label, parent.state, no_smoothing),
                              dtype=float)
            if len(scores) != parent.num_substates:
                raise ValueError("Lexicon gave %d scores for %d substates of %r"
                                 % (len(scores), parent.num_substates, parent))
            parent.set_inside(scores, scaling.scale_array(scores, 0))

        elif len(children) == 1:
            child = children[0].label
            scores = np.zeros(parent.num_substates)
            rule = self.grammar.unary_rules.get((parent.state, child.state))
            if rule is not None:
                for c, vec in rule.scores.items():
                    child_inside = child.inside[c]
                    if child_inside == 0:
                        continue
                    scores += vec * child_inside
            parent.set_inside(scores, scaling.scale_array(scores, child.inside_scale))

        elif len(children) == 2:
            left = children[0].label
            right = children[1].label
            scores = np.zeros(parent.num_substates)
            rule = self.grammar.binary_rules.get((parent.state, left.state, right.state))
            if rule is not None:
                for (l, r), vec in rule.scores.items():
                    left_inside = left.inside[l]
                    if left_inside == 0:
                        continue
                    right_inside = right.inside[r]
                    if right_inside == 0:
                        continue
                    scores += vec * (left_inside * right_inside)
            if span_scores is not None:
                scores *= self._span_factor(span_scores, parent)
            parent.set_inside(scores, scaling.scale_array(
                scores, scaling.calc_scale([left.inside_scale, right.inside_scale])))

        else:
            raise MalformedTreeException("Malformed tree: more than two children")

        if debug_output:
            logging.debug("Inside %r [%d, %d): %s scale %d", parent, parent.start, parent.end,
                          parent.inside, parent.inside_scale)

    def do_outside_scores(self, tree, unary_above=False, span_scores=None):
        """Top-down pass; set_root_outside_score must have been called first."""
        if tree.is_leaf() or tree.is_preterminal():
            return
        parent = tree.label
        if span_scores is not None and not unary_above:
            parent.outside *= self._span_factor(span_scores, parent)
        parent_outside = parent.outside
        children = tree.children

        if len(children) == 1:
            child = children[0].label
            scores = np.zeros(child.num_substates)
            rule = self.grammar.unary_rules.get((parent.state, child.state))
            if rule is not None:
                for c, vec in rule.scores.items():
                    scores[c] += np.dot(vec, parent_outside)
            child.set_outside(scores, scaling.scale_array(scores, parent.outside_scale))
            self.do_outside_scores(children[0], True, span_scores)

        elif len(children) == 2:
            left = children[0].label
            right = children[1].label
            left_scores = np.zeros(left.num_substates)
            right_scores = np.zeros(right.num_substates)
            rule = self.grammar.binary_rules.get((parent.state, left.state, right.state))
            if rule is not None:
                for (l, r), vec in rule.scores.items():
                    joint = np.dot(vec, parent_outside)
                    if joint == 0:
                        continue
                    left_scores[l] += joint * right.inside[r]
                    right_scores[r] += joint * left.inside[l]
            left.set_outside(left_scores, scaling.scale_array(
                left_scores, scaling.calc_scale([parent.outside_scale, right.inside_scale])))
            right.set_outside(right_scores, scaling.scale_array(
                right_scores, scaling.calc_scale([parent.outside_scale, left.inside_scale])))
            self.do_outside_scores(children[0], False, span_scores)
            self.do_outside_scores(children[1], False, span_scores)

        else:
            raise MalformedTreeException("Malformed tree: more than two children")

    def tree_log_likelihood(self, tree):
        """Natural log probability of the tree, -inf if it has none."""
        root = tree.label
        if root.inside is None:
            return float("-inf")
        return scaling.log_score(root.inside[0], root.inside_scale)
