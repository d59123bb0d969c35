#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def main(argv: list[str] | None = None) -> int:
    repo = _repo_root()
    sys.path.insert(0, str(repo / "runtime" / "core"))

    from errors import CadenceRuntimeError, SchemaValidationError
    from registry.definitions import load_declared_work
    from registry.schema_validator import SchemaValidator
    from registry.tasks import resolve_task_ref

    parser = argparse.ArgumentParser(description="Validate declarative periodic work definitions.")
    parser.add_argument("--definitions-dir", type=Path, default=repo / "definitions")
    parser.add_argument("--schemas-dir", type=Path, default=repo / "schemas")
    parser.add_argument("--resolve-tasks", action="store_true", help="also import every task reference")
    args = parser.parse_args(argv)

    try:
        validator = SchemaValidator.load_from_dir(args.schemas_dir)
        declared = load_declared_work(args.definitions_dir, schema_validator=validator)
    except SchemaValidationError as e:
        print(f"validation=FAIL kind={e.kind}")
        for v in e.violations:
            print(f"violation path={v.path} message={v.message}")
        return 1
    except CadenceRuntimeError as e:
        print("validation=FAIL")
        print(f"reason={e}")
        return 1

    failed = False
    for work in declared:
        d = work.definition
        print(
            f"name={d.name} interval_seconds={d.interval.total_seconds():.0f} "
            f"policy={work.policy.value} constraints={d.constraints.to_dict()}"
        )
        if args.resolve_tasks:
            try:
                resolve_task_ref(d.task_ref)
                print(f"task={d.task_ref} resolved=PASS")
            except CadenceRuntimeError as e:
                failed = True
                print(f"task={d.task_ref} resolved=FAIL reason={e}")

    print(f"definitions={len(declared)}")
    print("validation=FAIL" if failed else "validation=PASS")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
