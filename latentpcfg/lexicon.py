"""Smoothed word emission model P(word | tag substate).

Known words are scored from their fractional (tag substate, word) counts,
interpolated with the distribution of rare words for the tag. Unknown words
are mapped to a spelling signature (UNK-CAPS-NUM, UNK-LC-ing, ...) and
scored from the counts that signature collected over rare training tokens.
"""

import logging
import math
import unicodedata
from collections import Counter

import numpy as np

import scaling
from grammar import calculate_merge_arrays
from smoothing import NoSmoothing

# Score given instead of 0 so that no tag is ruled out entirely.
MIN_SCORE = 1e-87

SUFFIXES = ("ed", "ing", "ion", "er", "est", "ly", "ity", "y", "al")


def _is_upper(ch):
    return ch.isupper() or unicodedata.category(ch) == "Lt"


class Lexicon:

    def __init__(self, num_substates, smoothing_params=(0.5, 0.1), smoother=None,
                 threshold=1e-11, learn_unknown_word_rules=True):
        self.num_substates = list(num_substates)
        self.smoothing_params = tuple(smoothing_params)
        self.smoother = smoother if smoother is not None else NoSmoothing()
        self.threshold = threshold
        self.learn_unknown_word_rules = learn_unknown_word_rules

        n = len(self.num_substates)
        # Indexed by tag; each maps a word to a substate count vector.
        self.observed_counts = [dict() for _ in range(n)]
        # Indexed by tag; each maps a signature to a substate count vector.
        self.unknown_counts = [dict() for _ in range(n)] if learn_unknown_word_rules else None
        self.tag_counter = [np.zeros(k) for k in self.num_substates]
        self.unseen_tag_counter = [np.zeros(k) for k in self.num_substates]
        self.word_counter = Counter()
        self.total_tokens = 0.0
        self.total_unseen_tokens = 0.0
        self.total_words = 0.0

        self.smooth_in_unknowns_threshold = 100
        self.cached_signatures = {}
        self.cached_initial_signatures = {}

    def copy_lexicon(self, num_substates=None):
        """An empty lexicon with the same settings, for the next round of counting."""
        if num_substates is None:
            num_substates = self.num_substates
        new = Lexicon(num_substates, self.smoothing_params, self.smoother, self.threshold,
                      self.learn_unknown_word_rules)
        new.smooth_in_unknowns_threshold = self.smooth_in_unknowns_threshold
        return new

    # Signatures

    def get_signature(self, word, sentence_initial):
        """Unknown-word class of word from its spelling (English rules)."""
        sig = "UNK"
        if len(word) == 0:
            return sig
        wlen = len(word)
        num_caps = 0
        has_digit = False
        has_dash = False
        has_lower = False
        for ch in word:
            if ch.isdigit():
                has_digit = True
            elif ch == '-':
                has_dash = True
            elif ch.isalpha():
                if ch.islower():
                    has_lower = True
                elif unicodedata.category(ch) == "Lt":
                    has_lower = True
                    num_caps += 1
                else:
                    num_caps += 1
        ch0 = word[0]
        lowered = word.lower()
        if _is_upper(ch0):
            if sentence_initial and num_caps == 1:
                sig += "-INITC"
                if lowered in self.word_counter:
                    sig += "-KNOWNLC"
            else:
                sig += "-CAPS"
        elif not ch0.isalpha() and num_caps > 0:
            sig += "-CAPS"
        elif has_lower:
            sig += "-LC"
        if has_digit:
            sig += "-NUM"
        if has_dash:
            sig += "-DASH"
        if lowered.endswith("s") and wlen >= 3:
            # not -ss, or latin/greek -us and -is
            if lowered[-2] not in "siu":
                sig += "-s"
        elif wlen >= 5 and not has_dash and not (has_digit and num_caps > 0):
            for suffix in SUFFIXES:
                if lowered.endswith(suffix):
                    sig += "-" + suffix
                    break
        return sig

    def cached_signature(self, word, position):
        cache = self.cached_initial_signatures if position == 0 else self.cached_signatures
        sig = cache.get(word)
        if sig is None:
            sig = self.get_signature(word, position == 0)
            cache[word] = sig
        return sig

    # Scoring

    def score(self, word, tag, position, no_smoothing=False, is_signature=False):
        """Per-substate score of word under tag.

        Args:
            word: the token, or a signature when is_signature is set.
            tag: coarse state id of the preterminal.
            position: sentence position; only 0 matters (sentence-initial
                signatures).
            no_smoothing: score seen words without interpolating in the
                rare-word distribution.
            is_signature: treat word as an unknown-word signature.

        Returns:
            numpy vector of length num_substates[tag]. Zero entries are
            replaced by a tiny positive score before the smoother is applied.
        """
        c_w = self.word_counter.get(word, 0.0)
        if not is_signature and (c_w > 0 or no_smoothing):
            scores = self.score_observed_word(word, tag, no_smoothing, c_w)
        else:
            scores = self.score_unobserved_word(word, tag, position, is_signature)
        scores[scores == 0] = MIN_SCORE
        return self.smoother.smooth_vector(tag, scores)

    def score_state_set(self, leaf, tag, no_smoothing=False):
        return self.score(leaf.word, tag, leaf.start, no_smoothing, False)

    def score_observed_word(self, word, tag, no_smoothing, c_w):
        c_t = self.tag_counter[tag]
        result = np.zeros(self.num_substates[tag])
        seen = c_t > 0
        if not np.any(seen):
            return result
        c_tw = self.observed_counts[tag].get(word)
        if c_tw is None:
            c_tw = np.zeros(self.num_substates[tag])
        if self.total_unseen_tokens == 0:
            p_t_u = np.ones(self.num_substates[tag])
        else:
            p_t_u = self.unseen_tag_counter[tag] / self.total_unseen_tokens

        if c_w > self.smooth_in_unknowns_threshold or no_smoothing:
            # seen often enough to trust its own tag distribution
            if no_smoothing and c_w == 0:
                pb_t_w = c_tw.copy()
            else:
                pb_t_w = (c_tw + 0.0001 * p_t_u) / (c_w + 0.0001)
        else:
            s = self.smoothing_params[1]
            pb_t_w = (c_tw + s * p_t_u) / (c_w + s)

        p_t = c_t[seen] / self.total_tokens
        p_w = c_w / self.total_tokens
        result[seen] = pb_t_w[seen] * p_w / p_t
        return result

    def score_unobserved_word(self, word, tag, position, is_signature):
        sig = word if is_signature else self.cached_signature(word, position)
        n = self.num_substates[tag]
        c_ts = None
        if self.unknown_counts is not None:
            c_ts = self.unknown_counts[tag].get(sig)
        if c_ts is None:
            c_ts = np.zeros(n)
        c_s = self.word_counter.get(sig, 0.0)
        c_t_seen = self.tag_counter[tag]
        result = np.zeros(n)
        seen = c_t_seen > 0
        if not np.any(seen):
            return result
        if self.total_unseen_tokens == 0:
            p_t_u = np.zeros(n)
        else:
            p_t_u = self.unseen_tag_counter[tag] / self.total_unseen_tokens
        s = self.smoothing_params[0]
        pb_t_s = (c_ts + s * p_t_u) / (c_s + s)
        p_t = c_t_seen[seen] / self.total_tokens
        p_w = 1.0 / self.total_tokens
        result[seen] = pb_t_s[seen] * p_w / p_t
        return result

    # Counting

    def train_tree(self, tree, randomness, old_lexicon, no_smoothing, rare_threshold, rng=None):
        """Tally (tag substate, word) counts from one tree.

        With randomness == -1 each preterminal substate is weighted by its
        posterior under old_lexicon, which requires the tree's inside and
        outside scores. Otherwise every substate gets a random weight around
        1, drawn from rng. Words that were rare in old_lexicon also count
        towards the unknown-word statistics.

        Returns:
            False if the tree had zero probability and was skipped.
        """
        em = randomness == -1
        sentence_score = 0.0
        sentence_scale = 0
        if em:
            sentence_score = tree.label.inside[0]
            sentence_scale = tree.label.inside_scale
            if sentence_score == 0:
                logging.warning("Skipping a zero-probability tree in the lexicon")
                return False

        words = tree.leaves()
        tags = tree.preterminals()
        for position, (leaf, tag_set) in enumerate(zip(words, tags)):
            self.total_words += 1
            word = leaf.word
            state = tag_set.state
            sig = self.cached_signature(word, position)

            unseen_counts = None
            if self.unknown_counts is not None:
                unseen_counts = self.unknown_counts[state].get(sig)
                if unseen_counts is None:
                    unseen_counts = np.zeros(self.num_substates[state])
                    self.unknown_counts[state][sig] = unseen_counts
            counts = self.observed_counts[state].get(word)
            if counts is None:
                counts = np.zeros(self.num_substates[state])
                self.observed_counts[state][word] = counts

            if em:
                old_scores = old_lexicon.score(word, state, position, no_smoothing, False)
                multiplier = scaling.unscale(1.0 / sentence_score,
                                             scaling.calc_scale([tag_set.outside_scale, -sentence_scale]))
                weights = tag_set.outside * old_scores * multiplier
            else:
                weights = rng.random(self.num_substates[state]) * randomness / 100.0 + 1.0

            total = float(np.sum(weights))
            counts += weights
            self.tag_counter[state] += weights
            self.word_counter[word] += total
            self.total_tokens += total

            if old_lexicon is not None and old_lexicon.word_counter.get(word, 0.0) < rare_threshold + 0.5:
                self.word_counter[sig] += total
                if unseen_counts is not None:
                    unseen_counts += weights
                self.unseen_tag_counter[state] += weights
                self.total_unseen_tokens += total

        if math.isnan(self.total_tokens):
            raise ValueError("Lexicon token count became NaN")
        return True

    def tally_state_set_tree(self, tree, old_lexicon, rare_threshold):
        """EM tally of a tree whose scores were computed with old_lexicon."""
        return self.train_tree(tree, -1, old_lexicon, True, rare_threshold)

    def optimize(self):
        # word counts changed, so KNOWNLC signatures may have too
        self.cached_signatures = {}
        self.cached_initial_signatures = {}

    def add_counts(self, other):
        """Add the counts collected by another lexicon of the same shape."""
        for state in range(len(self.num_substates)):
            for word, vec in other.observed_counts[state].items():
                if word in self.observed_counts[state]:
                    self.observed_counts[state][word] += vec
                else:
                    self.observed_counts[state][word] = vec.copy()
            if self.unknown_counts is not None and other.unknown_counts is not None:
                for sig, vec in other.unknown_counts[state].items():
                    if sig in self.unknown_counts[state]:
                        self.unknown_counts[state][sig] += vec
                    else:
                        self.unknown_counts[state][sig] = vec.copy()
            self.tag_counter[state] += other.tag_counter[state]
            self.unseen_tag_counter[state] += other.unseen_tag_counter[state]
        self.word_counter.update(other.word_counter)
        self.total_tokens += other.total_tokens
        self.total_unseen_tokens += other.total_unseen_tokens
        self.total_words += other.total_words

    def tie_rare_word_stats(self, rare_threshold):
        """Give every rare word the substate distribution of unseen words for its tag."""
        for state in range(len(self.num_substates)):
            unseen_total = np.sum(self.unseen_tag_counter[state])
            if unseen_total == 0:
                continue
            for word, counts in self.observed_counts[state].items():
                if self.word_counter.get(word, 0.0) < rare_threshold + 0.5:
                    word_tag_total = np.sum(counts)
                    counts[:] = self.unseen_tag_counter[state] * word_tag_total / unseen_total

    def remove_unlikely_tags(self, threshold, exponent=-1.0):
        for state in range(len(self.num_substates)):
            for counts in self.observed_counts[state].values():
                counts[counts < threshold] = 0

    # Splitting and merging

    def split_all_states(self):
        """New lexicon with every substate (except ROOT's) split in two, counts halved."""
        new_num_substates = [1] + [2 * n for n in self.num_substates[1:]]
        new = self.copy_lexicon(new_num_substates)

        def split(vec, state):
            if new_num_substates[state] == self.num_substates[state]:
                return vec.copy()
            return np.repeat(vec, 2) / 2.0

        for state in range(len(self.num_substates)):
            new.observed_counts[state] = {w: split(v, state) for w, v in self.observed_counts[state].items()}
            if self.unknown_counts is not None:
                new.unknown_counts[state] = {s: split(v, state) for s, v in self.unknown_counts[state].items()}
            new.tag_counter[state] = split(self.tag_counter[state], state)
            new.unseen_tag_counter[state] = split(self.unseen_tag_counter[state], state)
        new.word_counter = Counter(self.word_counter)
        new.total_tokens = self.total_tokens
        new.total_unseen_tokens = self.total_unseen_tokens
        new.total_words = self.total_words
        return new

    def merge_states(self, merge_these_pairs, merge_weights=None):
        """New lexicon with the marked substate pairs summed together.

        Both the observed and the unknown-word statistics are merged.
        merge_weights is accepted for symmetry with Grammar.merge_states;
        counts are summed, so it is not needed.
        """
        new_num_substates, mapping, partners = calculate_merge_arrays(merge_these_pairs, self.num_substates)
        new = self.copy_lexicon(new_num_substates)

        def merge(vec, state):
            merged = np.zeros(new_num_substates[state])
            np.add.at(merged, mapping[state], vec)
            return merged

        for state in range(len(self.num_substates)):
            new.observed_counts[state] = {w: merge(v, state) for w, v in self.observed_counts[state].items()}
            if self.unknown_counts is not None:
                new.unknown_counts[state] = {s: merge(v, state) for s, v in self.unknown_counts[state].items()}
            new.tag_counter[state] = merge(self.tag_counter[state], state)
            new.unseen_tag_counter[state] = merge(self.unseen_tag_counter[state], state)
        new.word_counter = Counter(self.word_counter)
        new.total_tokens = self.total_tokens
        new.total_unseen_tokens = self.total_unseen_tokens
        new.total_words = self.total_words
        return new

    def merge(self, candidate):
        """New lexicon merging the single substate pair of a MergeCandidate."""
        pairs = [np.zeros((n, n), dtype=bool) for n in self.num_substates]
        pairs[candidate.state][candidate.substate1, candidate.substate2] = True
        return self.merge_states(pairs)

    # Statistics and output

    def _all_scores(self):
        for state in range(len(self.num_substates)):
            for word in self.observed_counts[state]:
                yield state, word, self.score(word, state, 0, False, False)
            if self.unknown_counts is not None:
                for sig in self.unknown_counts[state]:
                    yield state, sig, self.score(sig, state, 0, False, True)

    def total_rules(self, threshold):
        return sum(int(np.sum(scores > threshold)) for _, _, scores in self._all_scores())

    def estimated_merge_rule_count_delta(self):
        """Lexical rules saved by merging each odd substate into its even sibling.

        Returns:
            list indexed by state of integer arrays indexed by substate.
        """
        delta = [np.zeros(n, dtype=int) for n in self.num_substates]
        for state, _, scores in self._all_scores():
            for split in range(1, len(scores), 2):
                if scores[split] > self.threshold and scores[split - 1] > self.threshold:
                    delta[state][split] -= 1
        return delta

    def to_lines(self, numberer, threshold=0.0):
        lines = []
        for state, word, scores in self._all_scores():
            tag = numberer.symbol(state)
            for split, score in enumerate(scores):
                if score > threshold:
                    lines.append("%s_%d -> %s %.10f" % (tag, split, word, math.log(score)))
        return lines

    def __getstate__(self):
        state = self.__dict__.copy()
        state["cached_signatures"] = {}
        state["cached_initial_signatures"] = {}
        return state
