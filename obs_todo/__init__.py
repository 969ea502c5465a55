"""In-memory todo service instrumented with metrics, JSON logs and trace ids."""
