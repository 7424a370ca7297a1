"""Reading and writing trained grammars.

Two forms are written: a text form listing every rule with its natural log
probability, and a gzip-compressed pickle of the ParserData record that
reloads exactly.
"""

import datetime
import gzip
import logging
import pickle

LEXICON_SEPARATOR = "===== LEXICON ====="


class ParserData:
    """Everything needed to reload a trained grammar.

    h_markov, v_markov and binarization describe the tree transform that
    produced the training trees; they are carried along, not used here.
    """

    def __init__(self, grammar, lexicon, numberer, num_substates=None, h_markov=0, v_markov=1,
                 binarization="right"):
        self.grammar = grammar
        self.lexicon = lexicon
        self.numberer = numberer
        self.num_substates = list(num_substates if num_substates is not None else grammar.num_substates)
        self.h_markov = h_markov
        self.v_markov = v_markov
        self.binarization = binarization


def _opener(filename):
    return gzip.open if filename.endswith('.gz') else open


def grammar_header(grammar, lexicon, rare_threshold=20, h_markov=0, threshold=None):
    if threshold is None:
        threshold = grammar.min_rule_probability
    return ("lang=UNK format=Berkeley unkThresh=%d start=ROOT_0 hMarkov=%d vMarkov=- date=%s "
            "vocabSize=%d nBinary=%d nUnary=%d nLex=%d" % (
                rare_threshold, h_markov, datetime.date.today().strftime("%Y/%m/%d"),
                grammar.total_substates(), grammar.total_binary_rules(threshold),
                grammar.total_closed_unary_rules(threshold), lexicon.total_rules(threshold)))


def write_grammar(grammar, numberer, filename, threshold=None):
    """Write rules, one per line, as 'P_s -> L_s R_s logprob' or 'P_s -> C_s logprob'."""
    if threshold is None:
        threshold = grammar.min_rule_probability
    grammar.numberer = numberer
    with _opener(filename)(filename, 'wt') as outf:
        for line in grammar.to_lines(threshold):
            outf.write(line + "\n")


def write_lexicon(lexicon, numberer, filename, threshold=None):
    """Write lexical rules, one per line, as 'TAG_s -> word logprob'."""
    if threshold is None:
        threshold = lexicon.threshold
    with _opener(filename)(filename, 'wt') as outf:
        for line in sorted(lexicon.to_lines(numberer, threshold)):
            outf.write(line + "\n")


def write_text(parser_data, prefix):
    """Write <prefix>.grammar and <prefix>.lexicon."""
    write_grammar(parser_data.grammar, parser_data.numberer, prefix + ".grammar")
    write_lexicon(parser_data.lexicon, parser_data.numberer, prefix + ".lexicon")
    logging.info("Wrote text grammar to %s.grammar and %s.lexicon", prefix, prefix)


def write_combined(parser_data, filename, rare_threshold=20):
    """One file: a header line, the rules, a separator line, then the lexicon."""
    grammar = parser_data.grammar
    lexicon = parser_data.lexicon
    threshold = grammar.min_rule_probability
    grammar.numberer = parser_data.numberer
    with _opener(filename)(filename, 'wt') as outf:
        outf.write(grammar_header(grammar, lexicon, rare_threshold, parser_data.h_markov, threshold) + "\n")
        for line in grammar.to_lines(threshold):
            outf.write(line + "\n")
        outf.write(LEXICON_SEPARATOR + "\n")
        for line in sorted(lexicon.to_lines(parser_data.numberer, threshold)):
            outf.write(line + "\n")
    logging.info("Saved grammar to %s", filename)


def save(parser_data, filename):
    with gzip.open(filename, 'wb') as outf:
        pickle.dump(parser_data, outf, protocol=pickle.HIGHEST_PROTOCOL)
    logging.info("Saved serialized grammar to %s", filename)


def load(filename):
    with gzip.open(filename, 'rb') as inf:
        parser_data = pickle.load(inf)
    if not isinstance(parser_data, ParserData):
        raise ValueError("%s does not contain a serialized grammar" % filename)
    return parser_data
