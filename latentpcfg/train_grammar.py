#train_grammar.py
#
# Train a latent-annotation PCFG from a binarized treebank by repeated
# split / merge / smooth cycles, and save it.

import argparse
import logging

import grammar_io
from grammar_merger import LIKELIHOOD, MERGE_RANKINGS
from grammar_trainer import GrammarTrainer, TrainerOptions
from utility import load_trees


def build_parser():
	parser = argparse.ArgumentParser(description='Train a latent-annotation PCFG with split, merge and smooth cycles.')
	parser.add_argument('treebank', type=str, help='training trees, one bracketed binarized tree per line')
	parser.add_argument('output', type=str, help='filename of the serialized grammar (gzip pickle)')

	parser.add_argument('--dev', type=str, default=None, help="held-out trees used to pick the best iteration")
	parser.add_argument('--cycles', type=int, default=6, help="Number of split/merge/smooth cycles. (default 6)")
	parser.add_argument('--split-iterations', type=int, default=50, help="EM iterations after splitting. (default 50)")
	parser.add_argument('--merge-iterations', type=int, default=20, help="EM iterations after merging. (default 20)")
	parser.add_argument('--smooth-iterations', type=int, default=10, help="EM iterations after smoothing. (default 10)")
	parser.add_argument('--merge-fraction', type=float, default=0.5, help="Fraction of new substates merged back. (default 0.5)")
	parser.add_argument('--min-rule-probability', type=float, default=1e-11, help="Rules below this are pruned. (default 1e-11)")
	parser.add_argument('--grammar-smoothing', type=float, default=0.01, help="Smoothing of grammar rules. (default 0.01)")
	parser.add_argument('--lexicon-smoothing', type=float, default=0.1, help="Smoothing of lexical rules. (default 0.1)")
	parser.add_argument('--seed', type=int, default=2, help="Random seed. (default 2)")
	parser.add_argument('--randomization', type=float, default=1.0, help="Percentage of noise added when splitting. (default 1)")
	parser.add_argument('--rare-threshold', type=int, default=20, help="Words seen fewer times count as rare. (default 20)")
	parser.add_argument('--max-length', type=int, default=None, help="Skip trees with longer yields.")
	parser.add_argument('--processes', type=int, default=1, help="Worker processes for the E-step. (default 1)")
	parser.add_argument('--merge-ranking', choices=MERGE_RANKINGS, default=LIKELIHOOD, help="How merge candidates are ranked. (default likelihood)")
	parser.add_argument('--text', type=str, default=None, help="Also write the grammar in text form to this file.")
	parser.add_argument('--text-prefix', type=str, default=None, help="Also write PREFIX.grammar and PREFIX.lexicon.")
	parser.add_argument('--verbose', action="store_true", help="Print out some useful information")
	return parser


def main(argv=None):
	args = build_parser().parse_args(argv)
	logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
		format='%(asctime)s %(levelname)s %(message)s')

	options = TrainerOptions(
		cycles=args.cycles,
		split_iterations=args.split_iterations,
		merge_iterations=args.merge_iterations,
		smooth_iterations=args.smooth_iterations,
		merge_fraction=args.merge_fraction,
		min_rule_probability=args.min_rule_probability,
		randomization=args.randomization,
		seed=args.seed,
		rare_threshold=args.rare_threshold,
		grammar_smoothing=args.grammar_smoothing,
		lexicon_smoothing=args.lexicon_smoothing,
		processes=args.processes,
		merge_ranking=args.merge_ranking)

	train_trees = load_trees(args.treebank, args.max_length)
	logging.info("Loaded %d training trees from %s", len(train_trees), args.treebank)
	dev_trees = None
	if args.dev:
		dev_trees = load_trees(args.dev, args.max_length)
		logging.info("Loaded %d held-out trees from %s", len(dev_trees), args.dev)

	trainer = GrammarTrainer(train_trees, options, dev_trees)
	trainer.run()
	parser_data = trainer.parser_data()
	grammar_io.save(parser_data, args.output)
	if args.text:
		grammar_io.write_combined(parser_data, args.text, args.rare_threshold)
	if args.text_prefix:
		grammar_io.write_text(parser_data, args.text_prefix)


if __name__ == '__main__':
	main()
