"""
Planning Assessor CLI.

Examples:
    python main.py analyze --lat 51.5034 --lon -0.1276 --analysis-type comprehensive
    python main.py analyze site.geojson --development-type residential
    python main.py load-policies lp-2030 policies.json
    python main.py comply asm_1234 lp-2030
    python main.py scenario lp-2030 growth.json
    python main.py assess request.json
"""

import sys
import json
import argparse
import logging
from typing import Any

from core.catalog import PROFILE_DESCRIPTIONS
from core.config import AssessorSettings, configure_logging
from core.errors import PlanningAssessmentError
from core.orchestrator import AssessmentRequest, build_pipeline

log = logging.getLogger(__name__)


def _load_json(path: str) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _print(data: Any):
    print(json.dumps(data, indent=2, default=str))


def cmd_analyze(args, pipeline) -> int:
    if args.geometry:
        geometry = _load_json(args.geometry)
    elif args.lat is not None and args.lon is not None:
        geometry = {"type": "Point", "coordinates": [args.lon, args.lat]}
    else:
        log.error("Provide a geometry file or --lat and --lon")
        return 2

    options = {"analysis_type": args.analysis_type, "development_type": args.development_type}
    report = pipeline.analyzer.analyze_site(geometry, args.address, options)
    _print(report.to_dict())
    return 0


def cmd_comply(args, pipeline) -> int:
    options = {
        "include_gap_analysis": not args.no_gap_analysis,
        "generate_recommendations": not args.no_recommendations,
        "detailed_analysis": not args.summary_only,
    }
    check = pipeline.compliance.run_compliance_check(args.assessment_id, args.local_plan_id, options)
    _print(check.to_dict())
    return 0


def cmd_scenario(args, pipeline) -> int:
    data = _load_json(args.parameters)
    if "parameters" not in data:
        data = {"name": args.name or "CLI scenario", "parameters": data}
    scenario = pipeline.scenarios.create_scenario(args.plan_id, data)
    result = pipeline.scenarios.run_scenario_modeling(scenario.id)
    _print({"scenario_id": scenario.id, **result.to_dict()})
    return 0


def cmd_assess(args, pipeline) -> int:
    request = AssessmentRequest.from_dict(_load_json(args.request))
    _print(pipeline.run(request))
    return 0


def cmd_load_policies(args, pipeline) -> int:
    data = _load_json(args.policies)
    policies = data.get("policies", []) if isinstance(data, dict) else data
    name = (data.get("name") if isinstance(data, dict) else None) or args.plan_id

    store = pipeline.store
    store.add_local_plan(args.plan_id, name)
    for policy in policies:
        store.add_policy(args.plan_id, policy)
    indexed = pipeline.compliance.load_policies(args.plan_id)
    _print({"local_plan_id": args.plan_id, "policies": len(indexed)})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="UK planning assessment engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    analyze = subparsers.add_parser("analyze", help="Constraint analysis for a site")
    analyze.add_argument("geometry", nargs="?", help="GeoJSON geometry file")
    analyze.add_argument("--lat", type=float, help="Latitude of a point site")
    analyze.add_argument("--lon", type=float, help="Longitude of a point site")
    analyze.add_argument("--address", help="Site address recorded on the report")
    analyze.add_argument("--analysis-type", default="basic",
                         choices=sorted(PROFILE_DESCRIPTIONS))
    analyze.add_argument("--development-type", help="e.g. residential, commercial, mixed_use")
    analyze.set_defaults(func=cmd_analyze)

    comply = subparsers.add_parser("comply", help="Policy compliance for a stored assessment")
    comply.add_argument("assessment_id")
    comply.add_argument("local_plan_id")
    comply.add_argument("--no-gap-analysis", action="store_true", help="Skip gap analysis")
    comply.add_argument("--no-recommendations", action="store_true", help="Skip recommendations")
    comply.add_argument("--summary-only", action="store_true", help="Omit per-criterion detail")
    comply.set_defaults(func=cmd_comply)

    scenario = subparsers.add_parser("scenario", help="Create and model a plan scenario")
    scenario.add_argument("plan_id")
    scenario.add_argument("parameters", help="JSON file of scenario parameters")
    scenario.add_argument("--name", help="Scenario name")
    scenario.set_defaults(func=cmd_scenario)

    assess = subparsers.add_parser("assess", help="Run the full assessment pipeline")
    assess.add_argument("request", help="JSON assessment request file")
    assess.set_defaults(func=cmd_assess)

    load = subparsers.add_parser("load-policies", help="Store and index a local plan's policies")
    load.add_argument("plan_id")
    load.add_argument("policies", help="JSON file: list of policies or {name, policies}")
    load.set_defaults(func=cmd_load_policies)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    settings = AssessorSettings.from_env()
    configure_logging("DEBUG" if args.verbose else settings.log_level)
    pipeline = build_pipeline(settings)

    try:
        return args.func(args, pipeline)
    except PlanningAssessmentError as e:
        log.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
