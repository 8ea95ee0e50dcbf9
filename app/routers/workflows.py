import logging

from fastapi import APIRouter, Depends

from app.agents.orchestrator import WorkflowEngine
from app.dependencies import get_engine
from app.schemas.agent import WorkflowResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/workflows", tags=["Workflows"])


@router.post("/trigger/{lead_id}", response_model=WorkflowResult)
async def trigger_workflow(lead_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """
    Start the pipeline for a lead: enrichment, deal creation and the cold
    outreach email.
    """
    logger.info("Workflow triggered for lead %s", lead_id)
    return await engine.start_workflow(lead_id)


@router.post("/check-reply/{deal_id}", response_model=WorkflowResult)
async def check_reply(deal_id: str, engine: WorkflowEngine = Depends(get_engine)):
    """Look for a new customer reply on the deal and negotiate one round."""
    return await engine.process_reply(deal_id)
