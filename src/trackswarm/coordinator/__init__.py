"""Planning, scheduling and execution of work units."""
