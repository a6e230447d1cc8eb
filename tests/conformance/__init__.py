"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the pricing workspace.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_revert.py - Reverting and editing back leave no trace
2. test_original_values.py - First-seen originals never change
3. test_fee_cancellation.py - Delete of a pending add cancels both
4. test_preview_consistency.py - Previews equal the formula on the edited loan
5. test_diff_symmetry.py - Swapping snapshots mirrors every change
6. test_aggregates.py - Currency deltas equal the sum of per-loan deltas
7. test_determinism.py - Same inputs, same diffs and fingerprints

These tests use hypothesis for property-based testing.
"""
