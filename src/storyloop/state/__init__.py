from storyloop.state.plan_store import FilePlanStore, PlanStore, parse_plan_document

__all__ = ["FilePlanStore", "PlanStore", "parse_plan_document"]
