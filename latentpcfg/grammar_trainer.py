"""Split / merge / smooth training of a latent-annotation grammar.

Starting from the unsplit (Markov-0) grammar read off the training trees,
each cycle splits every substate in two, merges back the pairs that help
least, and smooths across sibling substates, running EM after each step.
"""

import logging
import math
import time
from concurrent.futures import ProcessPoolExecutor

import numpy as np

from array_parser import ArrayParser
from grammar import Grammar, GrammarCounts
from grammar_io import ParserData
from grammar_merger import (LIKELIHOOD, MERGE_RANKINGS, compute_merge_likelihood_deltas,
                            compute_merge_weights, do_the_merges, print_merging_statistics,
                            select_merge_pairs)
from lexicon import Lexicon
from numberer import Numberer
from smoothing import NoSmoothing, SmoothAcrossParentBits
from trees import deallocate_tree, resize_trees, state_set_trees
from utility import ensure_root


class TrainerOptions:
    """Training hyperparameters, with the usual defaults."""

    def __init__(self, cycles=6, split_iterations=50, merge_iterations=20, smooth_iterations=10,
                 merge_fraction=0.5, min_rule_probability=1e-11, randomization=1.0, seed=2,
                 rare_threshold=20, grammar_smoothing=0.01, lexicon_smoothing=0.1,
                 max_dropping_iterations=6, processes=1, merge_ranking=LIKELIHOOD,
                 smoothing_params=(0.5, 0.1)):
        self.cycles = cycles
        self.split_iterations = split_iterations
        self.merge_iterations = merge_iterations
        self.smooth_iterations = smooth_iterations
        self.merge_fraction = merge_fraction
        self.min_rule_probability = min_rule_probability
        self.randomization = randomization
        self.seed = seed
        self.rare_threshold = rare_threshold
        self.grammar_smoothing = grammar_smoothing
        self.lexicon_smoothing = lexicon_smoothing
        self.max_dropping_iterations = max_dropping_iterations
        self.processes = processes
        self.merge_ranking = merge_ranking
        self.smoothing_params = tuple(smoothing_params)
        self.validate()

    def validate(self):
        if self.cycles < 0:
            raise ValueError("cycles must be >= 0")
        if not 0 <= self.merge_fraction <= 1:
            raise ValueError("merge fraction must be between 0 and 1")
        if not 0 <= self.grammar_smoothing < 1 or not 0 <= self.lexicon_smoothing < 1:
            raise ValueError("smoothing parameters must be in [0, 1)")
        if self.processes < 1:
            raise ValueError("processes must be >= 1")
        if self.merge_ranking not in MERGE_RANKINGS:
            raise ValueError("unknown merge ranking %r" % self.merge_ranking)


def tally_trees(grammar, lexicon, trees, rare_threshold, count_grammar=True):
    """E-step over a batch of trees.

    Returns:
        (grammar counts or None, lexicon holding the lexical counts,
        summed log likelihood, number of trees skipped)
    """
    parser = ArrayParser(grammar, lexicon)
    scratch = grammar.copy_grammar() if count_grammar else None
    new_lexicon = lexicon.copy_lexicon()
    likelihood = 0.0
    skipped = 0
    for tree in trees:
        parser.do_inside_outside_scores(tree, True)
        ll = parser.tree_log_likelihood(tree)
        # Skip sentences we couldn't parse
        if math.isinf(ll) or math.isnan(ll):
            skipped += 1
            deallocate_tree(tree)
            continue
        if scratch is not None:
            scratch.tally_tree(tree, grammar)
        new_lexicon.tally_state_set_tree(tree, lexicon, rare_threshold)
        likelihood += ll
        deallocate_tree(tree)
    counts = scratch.counts if scratch is not None else None
    return counts, new_lexicon, likelihood, skipped


_worker = {}


def _init_worker(grammar, lexicon, rare_threshold, count_grammar):
    _worker["args"] = (grammar, lexicon, rare_threshold, count_grammar)


def _tally_chunk(trees):
    grammar, lexicon, rare_threshold, count_grammar = _worker["args"]
    return tally_trees(grammar, lexicon, trees, rare_threshold, count_grammar)


class GrammarTrainer:

    def __init__(self, train_trees, options=None, dev_trees=None):
        """
        Args:
            train_trees: binarized training trees as nested tuples.
            options: TrainerOptions; defaults if None.
            dev_trees: optional held-out trees; when given, the model kept
                from each phase is the one with the best held-out likelihood.
        """
        self.options = options if options is not None else TrainerOptions()
        self.rng = np.random.default_rng(self.options.seed)
        train_trees = [ensure_root(t) for t in train_trees]
        dev_trees = [ensure_root(t) for t in dev_trees] if dev_trees else []
        if not train_trees:
            raise ValueError("No training trees")

        # Number the dev trees too so every label has a state id.
        self.numberer = Numberer()
        self.train_trees = state_set_trees(train_trees, self.numberer)
        self.dev_trees = state_set_trees(dev_trees, self.numberer)
        self.numberer.freeze()
        self.num_substates = [1] * self.numberer.size()

        self.grammar = None
        self.lexicon = None
        self.max_grammar = None
        self.max_lexicon = None
        self.train_log_likelihoods = []
        self.skipped_trees = []

    # Steps

    def initialize(self):
        """Markov-0 grammar and lexicon from unsplit counts, with a little noise."""
        o = self.options
        logging.info("Inducing M0 grammar from %d trees with %d states", len(self.train_trees),
                     self.numberer.size())
        grammar = Grammar(self.num_substates, NoSmoothing(), o.min_rule_probability, self.numberer)
        tmp_lexicon = Lexicon(self.num_substates, o.smoothing_params, NoSmoothing(), o.min_rule_probability)
        for tree in self.train_trees:
            tmp_lexicon.train_tree(tree, o.randomization, None, False, o.rare_threshold, self.rng)
        lexicon = tmp_lexicon.copy_lexicon()
        for tree in self.train_trees:
            lexicon.train_tree(tree, o.randomization, tmp_lexicon, False, o.rare_threshold, self.rng)
            grammar.count_unsplit_tree(tree)
        lexicon.tie_rare_word_stats(o.rare_threshold)
        lexicon.remove_unlikely_tags(lexicon.threshold, -1.0)
        grammar.optimize(o.randomization, self.rng)
        self._set_model(grammar, lexicon)

    def split_step(self):
        previous = self.max_grammar.total_substates()
        grammar = self.max_grammar.split_all_states(self.options.randomization, self.rng)
        lexicon = self.max_lexicon.split_all_states()
        grammar.set_smoother(NoSmoothing())
        lexicon.smoother = NoSmoothing()
        logging.info("Split %d substates into %d", previous, grammar.total_substates())
        self._set_model(grammar, lexicon)
        return self.options.split_iterations

    def merge_step(self):
        o = self.options
        if o.merge_fraction == 0:
            return 0
        grammar = self.max_grammar
        lexicon = self.max_lexicon
        merge_weights = compute_merge_weights(grammar, lexicon, self.train_trees)
        deltas = compute_merge_likelihood_deltas(grammar, lexicon, merge_weights, self.train_trees)
        pairs = select_merge_pairs(grammar, lexicon, deltas, o.merge_fraction, o.merge_ranking, merge_weights)
        merged_grammar, merged_lexicon = do_the_merges(grammar, lexicon, pairs, merge_weights)
        print_merging_statistics(grammar, merged_grammar, self.numberer)
        self._resize(merged_grammar.num_substates)

        # Retrain the lexicon against the merged model to rebuild its unknown-word statistics
        _, new_lexicon, _, _ = self._e_step(merged_grammar, merged_lexicon, False)
        new_lexicon.remove_unlikely_tags(new_lexicon.threshold, -1.0)
        self._set_model(merged_grammar, new_lexicon)
        return o.merge_iterations

    def smooth_step(self):
        o = self.options
        self.max_grammar.set_smoother(SmoothAcrossParentBits(o.grammar_smoothing, self.max_grammar.split_trees))
        self.max_lexicon.smoother = SmoothAcrossParentBits(o.lexicon_smoothing, self.max_grammar.split_trees)
        self.grammar = self.max_grammar
        self.lexicon = self.max_lexicon
        return o.smooth_iterations

    # EM

    def _chunks(self, trees):
        n = self.options.processes
        size = max(1, int(math.ceil(len(trees) / n)))
        return [trees[i:i + size] for i in range(0, len(trees), size)]

    def _e_step(self, grammar, lexicon, count_grammar=True):
        rare = self.options.rare_threshold
        if self.options.processes == 1:
            results = [tally_trees(grammar, lexicon, self.train_trees, rare, count_grammar)]
        else:
            with ProcessPoolExecutor(max_workers=self.options.processes, initializer=_init_worker,
                                     initargs=(grammar, lexicon, rare, count_grammar)) as executor:
                results = list(executor.map(_tally_chunk, self._chunks(self.train_trees)))

        counts = GrammarCounts() if count_grammar else None
        new_lexicon = lexicon.copy_lexicon()
        likelihood = 0.0
        skipped = 0
        for partial_counts, partial_lexicon, partial_likelihood, partial_skipped in results:
            if counts is not None:
                counts.add(partial_counts)
            new_lexicon.add_counts(partial_lexicon)
            likelihood += partial_likelihood
            skipped += partial_skipped
        new_lexicon.tie_rare_word_stats(rare)
        new_lexicon.optimize()
        if skipped:
            logging.warning("Skipped %d unparsable training trees", skipped)
        self.skipped_trees.append(skipped)
        return counts, new_lexicon, likelihood, skipped

    def do_one_em_iteration(self, grammar, lexicon):
        """One E-step and M-step.

        Returns:
            (new grammar, new lexicon, training log likelihood under the
            old model)
        """
        counts, new_lexicon, likelihood, _ = self._e_step(grammar, lexicon, True)
        new_grammar = grammar.copy_grammar()
        new_grammar.add_counts(counts)
        new_lexicon.remove_unlikely_tags(new_lexicon.threshold, -1.0)
        new_grammar.optimize(0)
        return new_grammar, new_lexicon, likelihood

    def calculate_log_likelihood(self, grammar, lexicon, trees):
        """Summed log likelihood of trees; unparsable trees contribute nothing."""
        parser = ArrayParser(grammar, lexicon)
        total = 0.0
        for tree in trees:
            parser.do_inside_scores(tree, False)
            ll = parser.tree_log_likelihood(tree)
            if not math.isinf(ll) and not math.isnan(ll):
                total += ll
            deallocate_tree(tree)
        return total

    def train_phase(self, iterations):
        """EM from the current best model, keeping the best by held-out likelihood.

        Without held-out trees every iteration is kept. A phase stops early
        after max_dropping_iterations iterations in a row without
        improvement.
        """
        o = self.options
        grammar = self.max_grammar
        lexicon = self.max_lexicon
        best_dev = float("-inf") if self.dev_trees else None
        dropping = 0
        for iteration in range(1, iterations + 1):
            if dropping >= o.max_dropping_iterations:
                logging.info("Held-out likelihood dropped for %d iterations; stopping", dropping)
                break
            t0 = time.time()
            grammar, lexicon, train_ll = self.do_one_em_iteration(grammar, lexicon)
            self.train_log_likelihoods.append(train_ll)
            if self.dev_trees:
                dev_ll = self.calculate_log_likelihood(grammar, lexicon, self.dev_trees)
                logging.debug("Validation set likelihood: %.3f", dev_ll)
                if dev_ll >= best_dev:
                    best_dev = dev_ll
                    self.max_grammar, self.max_lexicon = grammar, lexicon
                    dropping = 0
                else:
                    dropping += 1
            else:
                self.max_grammar, self.max_lexicon = grammar, lexicon
            logging.info("Iteration: %2d  Training set likelihood: %.4f  Time %d ms  nBinary=%d  nUnary=%d",
                         iteration, train_ll, int((time.time() - t0) * 1000),
                         grammar.total_binary_rules(), grammar.total_unary_rules())
        self.grammar = grammar
        self.lexicon = lexicon
        if best_dev is not None:
            logging.info("Dev-set log likelihood: %f", best_dev)

    def run(self):
        """Train for the configured number of cycles.

        Returns:
            (grammar, lexicon) of the best model.
        """
        if self.max_grammar is None:
            self.initialize()
        cycle_start = time.time()
        for split_index in range(self.options.cycles * 3):
            step = split_index % 3
            if step == 0:
                cycle_start = time.time()
                iterations = self.split_step()
            elif step == 1:
                iterations = self.merge_step()
            else:
                iterations = self.smooth_step()
            if iterations:
                self.train_phase(iterations)
            if step == 2:
                logging.info("Completed training cycle %d in %.1f s", split_index // 3 + 1,
                             time.time() - cycle_start)
        return self.max_grammar, self.max_lexicon

    def parser_data(self):
        """The best model so far, packaged for saving."""
        return ParserData(self.max_grammar, self.max_lexicon, self.numberer)

    # Helpers

    def _resize(self, num_substates):
        self.num_substates = list(num_substates)
        self.train_trees = resize_trees(self.train_trees, self.num_substates)
        self.dev_trees = resize_trees(self.dev_trees, self.num_substates)

    def _set_model(self, grammar, lexicon):
        self.grammar = self.max_grammar = grammar
        self.lexicon = self.max_lexicon = lexicon
        if grammar.num_substates != self.num_substates:
            self._resize(grammar.num_substates)
