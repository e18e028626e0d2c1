"""arq task functions."""
