"""rental_batch -- ``rental-batch`` command line: one job type per invocation."""
