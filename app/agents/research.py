"""Market research for a company, run on a schedule by the lifecycle poller.

The flow only reasons over the company's own pipeline; it does not browse
or search the web.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict

from langgraph.graph import StateGraph, END
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.agents.state import ResearchState
from app.database import SessionLocal, utcnow
from app.errors import EntityNotFoundError
from app.models.company import Company
from app.models.deal import Deal
from app.models.lead import Lead
from app.models.research import MarketResearch
from app.schemas.agent import ResearchFindings
from app.services.llm import call_llm, call_llm_json

logger = logging.getLogger(__name__)

MAX_ITEMS = 5


def analyze_node(state: ResearchState, llm: Callable) -> Dict[str, Any]:
    """Step 1: ask the reasoning service for trends and opportunities."""
    prompt = f"""{state['company_context']}

You are the marketing research agent. Using only the pipeline data below, describe
what is selling, which customer segments respond and where to focus outreach next.

PIPELINE SNAPSHOT:
{json.dumps(state['pipeline_snapshot'], indent=2, default=str)}

Respond with ONLY a JSON object:
{{"summary": "...", "trends": ["..."], "opportunities": ["..."], "target_segments": ["..."]}}"""
    findings = call_llm_json(prompt, ResearchFindings, max_tokens=2048, llm=llm)
    return {"findings": findings.model_dump(), "current_step": "analyze"}


def finalize_node(state: ResearchState) -> Dict[str, Any]:
    """Step 2: dedupe and cap each list."""
    findings = dict(state["findings"])
    for key in ("trends", "opportunities", "target_segments"):
        seen = []
        for item in findings.get(key, []):
            item = item.strip()
            if item and item not in seen:
                seen.append(item)
        findings[key] = seen[:MAX_ITEMS]
    return {"findings": findings, "current_step": "finalize"}


def build_research_graph(llm: Callable = None):
    llm = llm or call_llm

    def analyze(state: ResearchState) -> Dict[str, Any]:
        return analyze_node(state, llm)

    workflow = StateGraph(ResearchState)
    workflow.add_node("analyze", analyze)
    workflow.add_node("finalize", finalize_node)
    workflow.set_entry_point("analyze")
    workflow.add_edge("analyze", "finalize")
    workflow.add_edge("finalize", END)
    return workflow.compile()


def pipeline_snapshot(db: Session, company_id: str) -> Dict[str, Any]:
    by_status = dict(
        db.query(Deal.status, func.count(Deal.id))
        .filter(Deal.company_id == company_id)
        .group_by(Deal.status)
        .all()
    )
    won_products = (
        db.query(Deal.product_name, func.count(Deal.id), func.sum(Deal.total_amount))
        .filter(Deal.company_id == company_id, Deal.status == "closed_won")
        .group_by(Deal.product_name)
        .all()
    )
    industries = (
        db.query(Lead.industry, func.count(Lead.id))
        .filter(Lead.company_id == company_id, Lead.industry.isnot(None))
        .group_by(Lead.industry)
        .all()
    )
    return {
        "deals_by_status": by_status,
        "won_products": [{"product": p, "deals": n, "revenue": float(total or 0)} for p, n, total in won_products],
        "lead_industries": {industry: n for industry, n in industries},
    }


class ResearchRunner:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, llm: Callable = None):
        self.session_factory = session_factory
        self.graph = build_research_graph(llm)

    async def run(self, company_id: str, trigger: str = "scheduled") -> MarketResearch:
        """Record a running research row, run the flow, and store the outcome."""
        db = self.session_factory()
        try:
            company = db.query(Company).filter(Company.id == company_id).first()
            if not company:
                raise EntityNotFoundError("Company", company_id)
            record = MarketResearch(company_id=company_id, trigger=trigger, status="running")
            db.add(record)
            db.commit()
            record_id = record.id
            initial_state = {
                "company_id": company_id,
                "company_context": company.context_block(),
                "pipeline_snapshot": pipeline_snapshot(db, company_id),
            }
        finally:
            db.close()

        logger.info("Market research %s started for company %s (%s)", record_id, company_id, trigger)
        try:
            # Run blocking graph in a thread so we don't block the event loop
            result = await asyncio.to_thread(self.graph.invoke, initial_state)
        except Exception as e:
            self._finish(record_id, status="failed", error_message=str(e))
            logger.error("Market research %s failed: %s", record_id, e)
            raise

        findings = result["findings"]
        return self._finish(record_id, status="completed", summary=findings.get("summary"), findings=findings)

    def _finish(self, record_id: str, **fields) -> MarketResearch:
        db = self.session_factory()
        try:
            record = db.query(MarketResearch).filter(MarketResearch.id == record_id).one()
            for key, value in fields.items():
                setattr(record, key, value)
            record.completed_at = utcnow()
            db.commit()
            db.refresh(record)
            return record
        finally:
            db.close()
