"""Binary and unary rules over latent substates.

Rule scores are sparse: a BinaryRule maps (left substate, right substate) to
a dense numpy vector over parent substates, and a UnaryRule maps a child
substate to a vector over parent substates. A missing key means the
substate combination never occurs, which is different from a stored
probability of 0.0. Rules compare and hash by their coarse state ids only.
"""

import math

import numpy as np


class BinaryRule:

    def __init__(self, parent, left, right, scores=None):
        self.parent = parent
        self.left = left
        self.right = right
        self.scores = scores if scores is not None else {}

    def key(self):
        return (self.parent, self.left, self.right)

    def __eq__(self, other):
        return isinstance(other, BinaryRule) and self.key() == other.key()

    def __hash__(self):
        return hash(("binary",) + self.key())

    def __repr__(self):
        return "BinaryRule(%d -> %d %d)" % self.key()

    def is_empty(self):
        return len(self.scores) == 0

    def get_score(self, p, l, r):
        vec = self.scores.get((l, r))
        if vec is None:
            return 0.0
        return vec[p]

    def set_score(self, p, l, r, value, num_parent_substates):
        vec = self.scores.get((l, r))
        if vec is None:
            vec = np.zeros(num_parent_substates)
            self.scores[(l, r)] = vec
        vec[p] = value

    def add_score(self, l, r, values):
        """Add a whole parent vector to cell (l, r), creating it if absent."""
        vec = self.scores.get((l, r))
        if vec is None:
            self.scores[(l, r)] = np.array(values, dtype=float)
        else:
            vec += values

    def prune(self, threshold):
        """Zero scores below threshold; drop cells left with nothing."""
        for key in list(self.scores):
            vec = self.scores[key]
            vec[vec < threshold] = 0
            if not np.any(vec):
                del self.scores[key]

    def copy(self):
        return BinaryRule(self.parent, self.left, self.right,
                          {k: v.copy() for k, v in self.scores.items()})

    def entries(self):
        """Yield (parent substate, left substate, right substate, score) for stored cells."""
        for (l, r), vec in self.scores.items():
            for p, score in enumerate(vec):
                yield p, l, r, score

    def dense(self, num_substates):
        """Dense [left][right][parent] array; absent cells are 0."""
        result = np.zeros((num_substates[self.left], num_substates[self.right],
                           num_substates[self.parent]))
        for (l, r), vec in self.scores.items():
            result[l, r] = vec
        return result

    def rule_count(self, threshold):
        return sum(int(np.sum(vec > threshold)) for vec in self.scores.values())

    def split_rule(self, num_substates, new_num_substates, rng, randomness):
        """Spread each score over the cross product of the split substates.

        Every daughter cell receives score divided by the number of daughter
        cells: 4 when both children split, 2 when only one does. A random perturbation of randomness percent is added with
        opposite signs to sibling cells, so the mass per parent substate is
        preserved exactly. The parent dimension of ROOT is never split.
        """
        pf = new_num_substates[self.parent] // num_substates[self.parent]
        lf = new_num_substates[self.left] // num_substates[self.left]
        rf = new_num_substates[self.right] // num_substates[self.right]
        n_parent = new_num_substates[self.parent]
        noise = randomness / 100.0
        new_scores = {}
        for (l, r), vec in self.scores.items():
            for i in range(lf):
                for j in range(rf):
                    new_scores[(lf * l + i, rf * r + j)] = np.zeros(n_parent)
            for p, score in enumerate(vec):
                share = score / (lf * rf)
                for q in range(pf):
                    left_noise = 0.0
                    if noise and lf == 2:
                        left_noise = share * noise * (rng.random() - 0.5)
                    for i in range(lf):
                        right_noise = 0.0
                        if noise and rf == 2:
                            right_noise = share * noise * (rng.random() - 0.5)
                        for j in range(rf):
                            total = (-left_noise if i == 1 else left_noise) + \
                                    (-right_noise if j == 1 else right_noise)
                            new_scores[(lf * l + i, rf * r + j)][pf * p + q] = share + total
        return BinaryRule(self.parent, self.left, self.right, new_scores)

    def to_lines(self, numberer, threshold=0.0):
        sp = numberer.symbol(self.parent)
        sl = numberer.symbol(self.left)
        sr = numberer.symbol(self.right)
        lines = []
        for p, l, r, score in self.entries():
            if score > threshold:
                lines.append("%s_%d -> %s_%d %s_%d %.10f" % (sp, p, sl, l, sr, r, math.log(score)))
        return lines


class UnaryRule:

    def __init__(self, parent, child, scores=None):
        self.parent = parent
        self.child = child
        self.scores = scores if scores is not None else {}

    def key(self):
        return (self.parent, self.child)

    def __eq__(self, other):
        return isinstance(other, UnaryRule) and self.key() == other.key()

    def __hash__(self):
        return hash(("unary",) + self.key())

    def __repr__(self):
        return "UnaryRule(%d -> %d)" % self.key()

    def is_empty(self):
        return len(self.scores) == 0

    def is_self_loop(self):
        return self.parent == self.child

    def get_score(self, p, c):
        vec = self.scores.get(c)
        if vec is None:
            return 0.0
        return vec[p]

    def set_score(self, p, c, value, num_parent_substates):
        vec = self.scores.get(c)
        if vec is None:
            vec = np.zeros(num_parent_substates)
            self.scores[c] = vec
        vec[p] = value

    def add_score(self, c, values):
        vec = self.scores.get(c)
        if vec is None:
            self.scores[c] = np.array(values, dtype=float)
        else:
            vec += values

    def prune(self, threshold):
        for key in list(self.scores):
            vec = self.scores[key]
            vec[vec < threshold] = 0
            if not np.any(vec):
                del self.scores[key]

    def copy(self):
        return UnaryRule(self.parent, self.child, {k: v.copy() for k, v in self.scores.items()})

    def entries(self):
        for c, vec in self.scores.items():
            for p, score in enumerate(vec):
                yield p, c, score

    def dense(self, num_substates):
        """Dense [child][parent] array; absent cells are 0."""
        result = np.zeros((num_substates[self.child], num_substates[self.parent]))
        for c, vec in self.scores.items():
            result[c] = vec
        return result

    def rule_count(self, threshold):
        return sum(int(np.sum(vec > threshold)) for vec in self.scores.values())

    def split_rule(self, num_substates, new_num_substates, rng, randomness):
        """Split child substates in two, halving the score, with opposite-sign noise."""
        pf = new_num_substates[self.parent] // num_substates[self.parent]
        cf = new_num_substates[self.child] // num_substates[self.child]
        n_parent = new_num_substates[self.parent]
        noise = randomness / 100.0
        new_scores = {}
        for c, vec in self.scores.items():
            for k in range(cf):
                new_scores[cf * c + k] = np.zeros(n_parent)
            for p, score in enumerate(vec):
                share = score / cf
                for q in range(pf):
                    child_noise = 0.0
                    if noise and cf == 2:
                        child_noise = share * noise * (rng.random() - 0.5)
                    for k in range(cf):
                        new_scores[cf * c + k][pf * p + q] = share + (-child_noise if k == 1 else child_noise)
        return UnaryRule(self.parent, self.child, new_scores)

    def to_lines(self, numberer, threshold=0.0):
        sp = numberer.symbol(self.parent)
        sc = numberer.symbol(self.child)
        lines = []
        for p, c, score in self.entries():
            if score > threshold:
                lines.append("%s_%d -> %s_%d %.10f" % (sp, p, sc, c, math.log(score)))
        return lines
