"""CI validation: verify an exported experiment analysis is complete and sane.

This script is the final gate in CI. It reads the analysis JSON written by
`python -m src.simulator.generate --export ...` and asserts structural and
statistical invariants. If anything is wrong, it exits non-zero and fails
the build.

Usage:
    python ci/validate_analytics.py
    python ci/validate_analytics.py --data data/results.json
"""

import argparse
import json
import math
import sys
from pathlib import Path

REQUIRED_FIELDS = {
    "experiment_id",
    "variants",
    "total_users",
    "is_significant",
    "confidence_level",
    "lift",
    "winner",
    "status_message",
    "minimum_sample_size",
    "days_to_significance",
}
VARIANT_FIELDS = {"variant_id", "users", "conversions", "conversion_rate"}
DEFAULT_MIN_USERS_PER_ARM = 100


def _bad_number(value) -> bool:
    return isinstance(value, float) and not math.isfinite(value)


def validate(data: dict, min_users_per_arm: int = DEFAULT_MIN_USERS_PER_ARM) -> list[str]:
    """Return a list of validation errors (empty = pass)."""
    errors = []

    missing = REQUIRED_FIELDS - set(data)
    if missing:
        return [f"Missing top-level field(s): {sorted(missing)}"]

    exp_id = data["experiment_id"] or "UNKNOWN"

    # --- Numbers must never be NaN/Infinity ---
    for key in ("confidence_level", "lift"):
        if _bad_number(data[key]):
            errors.append(f"{exp_id}: {key} is not finite ({data[key]})")

    conf = data["confidence_level"]
    if isinstance(conf, (int, float)) and not 0 <= conf <= 100:
        errors.append(f"{exp_id}: confidence_level out of range: {conf}")

    days = data["days_to_significance"]
    if days is not None and (not isinstance(days, int) or days < 0):
        errors.append(f"{exp_id}: days_to_significance must be null or >= 0, got {days}")

    if data["minimum_sample_size"] < 0:
        errors.append(f"{exp_id}: negative minimum_sample_size")

    # --- Variants ---
    variants = data["variants"]
    if not variants:
        if data["total_users"] != 0 or data["is_significant"] or data["winner"]:
            errors.append(f"{exp_id}: verdict present without any variants")
        return errors

    for v in variants:
        absent = VARIANT_FIELDS - set(v)
        if absent:
            errors.append(f"{exp_id}: variant missing fields {sorted(absent)}")
            continue
        vid = v["variant_id"]
        if v["users"] < 0 or v["conversions"] < 0:
            errors.append(f"{exp_id}: variant {vid} has negative counts")
        if v["conversions"] > v["users"]:
            errors.append(f"{exp_id}: variant {vid} has more conversions than users")
        rate = v["conversion_rate"]
        if _bad_number(rate) or not 0 <= rate <= 1:
            errors.append(f"{exp_id}: variant {vid} conversion_rate out of range: {rate}")

    if errors:
        return errors

    total = sum(v["users"] for v in variants)
    if total != data["total_users"]:
        errors.append(f"{exp_id}: total_users {data['total_users']} != sum of variants {total}")

    # --- Verdict ---
    control_id = variants[0]["variant_id"]
    known = {v["variant_id"] for v in variants[1:]}
    winner = data["winner"]
    if winner is not None:
        if winner == control_id:
            errors.append(f"{exp_id}: control {control_id} declared as winner")
        elif winner not in known:
            errors.append(f"{exp_id}: winner {winner} is not a variant")
        elif not data["is_significant"]:
            errors.append(f"{exp_id}: winner declared without significance")

    if data["is_significant"]:
        if variants[0]["users"] < min_users_per_arm:
            errors.append(
                f"{exp_id}: significant with control below {min_users_per_arm} users"
            )
        if not any(v["users"] >= min_users_per_arm for v in variants[1:]):
            errors.append(
                f"{exp_id}: significant with every variant below {min_users_per_arm} users"
            )

    return errors


def main() -> None:
    parser = argparse.ArgumentParser(description="Validate an exported experiment analysis")
    parser.add_argument(
        "--data",
        default="data/results.json",
        help="Path to exported analysis JSON",
    )
    parser.add_argument(
        "--min-users", type=int, default=DEFAULT_MIN_USERS_PER_ARM,
        help="Per-arm floor the analysis was run with",
    )
    opts = parser.parse_args()

    path = Path(opts.data)
    if not path.exists():
        print(
            f"FAIL: {opts.data} not found. Run "
            f"'python -m src.simulator.generate --export {opts.data}' first."
        )
        sys.exit(1)

    data = json.loads(path.read_text())
    errors = validate(data, opts.min_users)

    if errors:
        print(f"FAIL: {len(errors)} validation error(s):")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)

    print("PASS: Analysis integrity validated")
    print(f"  Experiment: {data['experiment_id']}")
    print(f"  Users: {data['total_users']:,} across {len(data['variants'])} variants")
    print(f"  Status: {data['status_message']}")


if __name__ == "__main__":
    main()
