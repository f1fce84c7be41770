import os
import time
from datetime import datetime

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ValidationError

load_dotenv()

from portfolio_agent.agent import PortfolioAgent
from portfolio_agent.log_config import get_logger, setup_logging
from portfolio_agent.models import AgentAction

setup_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Portfolio Agent",
    description="LangGraph-powered natural-language portfolio editing agent",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

agent = PortfolioAgent()


class ChatRequest(BaseModel):
    query: str
    history: list[dict] = []
    # holdings, yearly_data, financial_profile, display_currency.
    # Holdings and yearly data are read from the store when omitted.
    context: dict = {}
    # Clients must echo back pending_action / pending_clarification from the
    # previous response when the user is confirming or answering a question.
    pending_action: dict | None = None
    pending_clarification: dict | None = None


class UndoRequest(BaseModel):
    history_id: int | None = None


@app.post("/chat")
async def chat(req: ChatRequest):
    start = time.time()
    try:
        result = await agent.run(
            req.query, req.context, req.pending_action, req.pending_clarification, req.history
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid context: {e.error_count()} errors")
    elapsed = round(time.time() - start, 2)

    response = result["response"]
    return {
        "response": response.message,
        "action": response.action,
        "data": response.data,
        "confidence": response.confidence,
        "suggestions": response.suggestions,
        "requires_confirmation": response.requires_confirmation,
        # Clients must echo these back in the next request
        "pending_action": result.get("pending_action"),
        "pending_clarification": result.get("pending_clarification"),
        "latency_seconds": elapsed,
    }


@app.post("/execute")
async def execute(action: dict):
    try:
        parsed = AgentAction.model_validate(action)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=f"Invalid action: {e.error_count()} errors")
    result = await agent.execute_action(parsed)
    return result.model_dump(mode="json")


@app.post("/undo")
async def undo(req: UndoRequest | None = None):
    last_action = None
    if req and req.history_id is not None:
        records = await agent.store.recent_actions(limit=100)
        last_action = next((r for r in records if r.id == req.history_id), None)
        if last_action is None:
            raise HTTPException(status_code=404, detail=f"No action {req.history_id} in recent history")
    result = await agent.undo(last_action)
    return result.model_dump(mode="json")


@app.get("/history")
async def history(limit: int = 20):
    records = await agent.learning.get_recent_actions(limit)
    return {"actions": [r.model_dump(mode="json") for r in records]}


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "llm_configured": bool(os.getenv("ANTHROPIC_API_KEY")),
        "timestamp": datetime.utcnow().isoformat(),
    }
