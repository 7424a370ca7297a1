#numberer.py
# Label <-> state id table. One is built per training run, filled during the
# corpus pass and then frozen.

from utility import ROOT


class Numberer:

	def __init__(self, root=ROOT):
		self.idx2label = []
		self.label2idx = {}
		self.frozen = False
		self.number(root)

	def number(self, label):
		"""Return the id of label, assigning a new one if we have not seen it yet."""
		if label in self.label2idx:
			return self.label2idx[label]
		if self.frozen:
			raise KeyError("Unknown label %s in a frozen numberer" % label)
		idx = len(self.idx2label)
		self.idx2label.append(label)
		self.label2idx[label] = idx
		return idx

	def symbol(self, idx):
		return self.idx2label[idx]

	def freeze(self):
		self.frozen = True

	def size(self):
		return len(self.idx2label)

	def labels(self):
		return list(self.idx2label)

	def __contains__(self, label):
		return label in self.label2idx

	def __len__(self):
		return len(self.idx2label)
