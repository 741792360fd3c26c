"""External tool stages, probing, progress parsing and pipeline execution."""
