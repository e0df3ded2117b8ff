"""romod: local speech and language-model engine daemon."""
