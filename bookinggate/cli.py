import argparse
import json
import sys

import yaml

VERSION = "0.1.0"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="bookinggate")
    sub = p.add_subparsers(dest="cmd", required=True)

    eval_p = sub.add_parser("evaluate", help="Decide a booking request from a context file.")
    eval_p.add_argument("--context", required=True, help="Path to a JSON or YAML booking context")
    eval_p.add_argument("--workspace", help="Workspace id")
    eval_p.add_argument("--artist", help="Artist id")
    eval_p.add_argument("--format", default="text", choices=["text", "json"])
    eval_p.add_argument(
        "--no-record",
        action="store_true",
        help="Skip the decision log unless the decision carries configuration warnings",
    )

    # Rules
    rules_p = sub.add_parser("rules", help="Manage policy rules.")
    rules_sub = rules_p.add_subparsers(dest="rules_cmd", required=True)

    rules_list = rules_sub.add_parser("list", help="List rules")
    rules_list.add_argument("--scope", choices=["global", "workspace", "artist"])
    rules_list.add_argument("--scope-id")

    rules_export = rules_sub.add_parser("export", help="Export rules to YAML or JSON")
    rules_export.add_argument("--format", default="yaml", choices=["yaml", "json"])
    rules_export.add_argument("--out", help="Write to file instead of stdout")
    rules_export.add_argument("--scope", choices=["global", "workspace", "artist"], help="Only rules at this scope")
    rules_export.add_argument("--scope-id")

    rules_import = rules_sub.add_parser("import", help="Import rules from a file (all or nothing)")
    rules_import.add_argument("--file", required=True)
    rules_import.add_argument("--format", choices=["yaml", "json"], help="Defaults to the file extension")
    rules_import.add_argument("--actor", help="Recorded as changed_by")

    rules_template = rules_sub.add_parser("from-template", help="Create a rule from a built-in template")
    rules_template.add_argument("--template", required=True)
    rules_template.add_argument("--scope", default="global", choices=["global", "workspace", "artist"])
    rules_template.add_argument("--scope-id")
    rules_template.add_argument("--rule-key")
    rules_template.add_argument("--actor", help="Recorded as changed_by")

    rules_update = rules_sub.add_parser("update", help="Apply a partial update from a JSON or YAML file")
    rules_update.add_argument("--id", type=int, required=True)
    rules_update.add_argument("--file", required=True)

    rule_mutations = [rules_update]
    for name, help_text in (
        ("enable", "Enable a rule"),
        ("disable", "Disable a rule"),
        ("delete", "Delete a rule"),
    ):
        rules_cmd = rules_sub.add_parser(name, help=help_text)
        rules_cmd.add_argument("--id", type=int, required=True)
        rule_mutations.append(rules_cmd)

    for rules_cmd in rule_mutations:
        rules_cmd.add_argument("--actor", help="Recorded as changed_by")
        rules_cmd.add_argument("--reason")

    # Policy settings
    policy_p = sub.add_parser("policy", help="Policy settings versions.")
    policy_sub = policy_p.add_subparsers(dest="policy_cmd", required=True)

    policy_create = policy_sub.add_parser("create-version", help="Publish a new settings version")
    policy_create.add_argument("--scope", default="global", choices=["global", "workspace", "artist"])
    policy_create.add_argument("--scope-id")
    policy_create.add_argument("--settings", required=True, help="Path to a JSON or YAML settings file")
    policy_create.add_argument("--summary", help="Summary text (generated when omitted)")
    policy_create.add_argument("--expected-version", type=int)
    policy_create.add_argument("--actor", help="Recorded as created_by")

    policy_show = policy_sub.add_parser("show", help="Show the effective settings for a booking scope")
    policy_show.add_argument("--workspace")
    policy_show.add_argument("--artist")

    policy_list = policy_sub.add_parser("list", help="List versions at a scope")
    policy_list.add_argument("--scope", default="global", choices=["global", "workspace", "artist"])
    policy_list.add_argument("--scope-id")

    # Audit
    audit_p = sub.add_parser("audit", help="Query audit logs.")
    audit_sub = audit_p.add_subparsers(dest="audit_cmd", required=True)

    audit_list = audit_sub.add_parser("list", help="List recent configuration changes")
    audit_list.add_argument("--entity-type")
    audit_list.add_argument("--action", choices=["created", "updated", "deleted", "approved", "rejected"])
    audit_list.add_argument("--query")
    audit_list.add_argument("--limit", type=int, default=20)
    audit_list.add_argument("--offset", type=int, default=0)

    audit_show = audit_sub.add_parser("show-decision", help="Show a recorded decision")
    audit_show.add_argument("--evaluation-id", required=True)

    serve_p = sub.add_parser("serve", help="Run the HTTP API.")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8000)

    sub.add_parser("migrate", help="Apply pending schema migrations.")
    sub.add_parser("version", help="Print version.")
    return p


def _load_document(path: str):
    with open(path, "r", encoding="utf-8") as f:
        if path.endswith(".json"):
            return json.load(f)
        return yaml.safe_load(f) or {}


def _scope_ref(scope: str, scope_id):
    from bookinggate.policy.models import ScopeRef

    return ScopeRef(scope=scope, scope_id=scope_id)


def _print_decision_text(result) -> None:
    print(f"Decision: {result.decision.value}")
    print(f"Reason:   {result.reason_code}")
    if result.matched_rule_key:
        print(f"Rule:     {result.matched_rule_key} (id {result.matched_rule_id})")
    if result.explain_public:
        print(f"Client:   {result.explain_public}")
    if result.explain_internal:
        print(f"Internal: {result.explain_internal}")
    for warning in result.warnings:
        print(f"Warning:  [{warning.severity}] {warning.title}: {warning.client_message}")
    for item in result.configuration_warnings:
        print(f"Config:   {item.code} {item.message}", file=sys.stderr)


def main() -> int:
    # If no arguments provided, show help
    if len(sys.argv) == 1:
        sys.argv.append("--help")

    p = build_parser()
    args = p.parse_args()

    if args.cmd == "version":
        print(f"bookinggate {VERSION}")
        return 0

    from bookinggate.errors import BookingGateError

    try:
        return _dispatch(args)
    except BookingGateError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 1
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _dispatch(args) -> int:
    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("bookinggate.server:app", host=args.host, port=args.port, log_level="info")
        return 0

    if args.cmd == "migrate":
        from bookinggate.storage.schema import schema_status

        print(json.dumps(schema_status(), indent=2))
        return 0

    if args.cmd == "evaluate":
        from bookinggate.engine import BookingPolicyEngine
        from bookinggate.policy.models import DecisionRequest

        context = _load_document(args.context)
        request = DecisionRequest(
            scope={"workspace_id": args.workspace, "artist_id": args.artist},
            context=context,
        )
        engine = BookingPolicyEngine(record_decisions=False if args.no_record else None)
        result = engine.decide(request)
        if args.format == "json":
            print(json.dumps(result.model_dump(mode="json"), indent=2))
        else:
            _print_decision_text(result)
        return 0

    if args.cmd == "rules":
        from bookinggate.policy import rules as rule_store
        from bookinggate.policy.templates import create_rule_from_template
        from bookinggate.policy.transfer import export_rules, import_rules

        if args.rules_cmd == "list":
            rules = rule_store.list_rules(scope=args.scope, scope_id=args.scope_id)
            print(json.dumps([rule.model_dump(mode="json") for rule in rules], indent=2))
        elif args.rules_cmd == "export":
            scope = _scope_ref(args.scope, args.scope_id) if args.scope else None
            content = export_rules(scope=scope, fmt=args.format)
            if args.out:
                with open(args.out, "w", encoding="utf-8") as f:
                    f.write(content)
                print(f"Exported rules to {args.out}")
            else:
                print(content)
        elif args.rules_cmd == "import":
            fmt = args.format or ("json" if args.file.endswith(".json") else "yaml")
            with open(args.file, "r", encoding="utf-8") as f:
                created = import_rules(f.read(), fmt=fmt, changed_by=args.actor)
            print(f"Imported {len(created)} rule(s)")
        elif args.rules_cmd == "from-template":
            rule = create_rule_from_template(
                args.template,
                scope=_scope_ref(args.scope, args.scope_id),
                rule_key=args.rule_key,
                changed_by=args.actor,
            )
            print(json.dumps(rule.model_dump(mode="json"), indent=2))
        elif args.rules_cmd == "update":
            rule = rule_store.update_rule(
                args.id, _load_document(args.file), changed_by=args.actor, reason=args.reason
            )
            print(json.dumps(rule.model_dump(mode="json"), indent=2))
        elif args.rules_cmd in ("enable", "disable"):
            rule = rule_store.set_rule_enabled(
                args.id, args.rules_cmd == "enable", changed_by=args.actor, reason=args.reason
            )
            print(f"Rule {rule.id} ({rule.rule_key}) {args.rules_cmd}d")
        elif args.rules_cmd == "delete":
            rule = rule_store.delete_rule(args.id, changed_by=args.actor, reason=args.reason)
            print(f"Deleted rule {rule.id} ({rule.rule_key})")
        return 0

    if args.cmd == "policy":
        from bookinggate.policy import versions as version_store

        if args.policy_cmd == "create-version":
            settings = _load_document(args.settings)
            created = version_store.create_version(
                _scope_ref(args.scope, args.scope_id),
                settings,
                summary_text=args.summary,
                created_by=args.actor,
                expected_version=args.expected_version,
            )
            print(f"Version {created.version} is now active at {args.scope}")
        elif args.policy_cmd == "show":
            effective = version_store.resolve_effective_settings(workspace_id=args.workspace, artist_id=args.artist)
            print(json.dumps(effective.model_dump(mode="json"), indent=2))
        elif args.policy_cmd == "list":
            versions = version_store.list_versions(_scope_ref(args.scope, args.scope_id))
            print(json.dumps([item.model_dump(mode="json") for item in versions], indent=2))
        return 0

    if args.cmd == "audit":
        from bookinggate.audit.reader import AuditReader

        if args.audit_cmd == "list":
            page = AuditReader.search(
                entity_type=args.entity_type,
                action=args.action,
                query=args.query,
                limit=args.limit,
                offset=args.offset,
            )
            print(json.dumps(page, indent=2, default=str))
        elif args.audit_cmd == "show-decision":
            row = AuditReader.get_decision(args.evaluation_id)
            if not row:
                print("Decision not found.", file=sys.stderr)
                return 1
            print(json.dumps(row, indent=2, default=str))
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
