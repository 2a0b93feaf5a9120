"""Judged branching dialogue on a local causal LM."""
