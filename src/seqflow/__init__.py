"""seqflow: DAG workflow engine for sequencing pipelines."""

__version__ = "0.1.0"
