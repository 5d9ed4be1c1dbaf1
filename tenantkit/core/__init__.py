"""Framework-independent building blocks: results, errors, hooks and the use case pipeline."""
