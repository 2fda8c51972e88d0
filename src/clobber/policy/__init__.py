"""Policy distribution and enforcement.

Rules published in policy list rooms are ingested into the rule store,
consolidated per protected room, and reconciled against what the engine
has already enforced there.
"""
