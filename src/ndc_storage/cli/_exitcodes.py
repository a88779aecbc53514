"""Process exit codes of the ndc-storage CLI."""

SUCCESS = 0
EXECUTION_FAILURE = 1
USAGE_ERROR = 2
