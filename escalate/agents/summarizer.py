# escalate/agents/summarizer.py
import json
import logging
from typing import Optional
from langchain_ollama import ChatOllama
from langchain_core.prompts import ChatPromptTemplate

from escalate.collaborators import SummarizationCollaborator
from escalate.models import IncidentContext

logger = logging.getLogger(__name__)

prompt = ChatPromptTemplate.from_messages([
    ("system",
     "You are an incident analyst. Summarize the incident for the on-call team using only the data provided.\n"
     "Cover: executive summary, likely root cause, timeline, affected services, customer impact, "
     "remediation so far and prevention recommendations. Format as markdown."),
    ("user",
     "Incident {id}: {title}\nSeverity: {severity}\nStatus: {status}\nWindow: {window}\n"
     "Affected services: {services}\nDescription: {description}\n\n"
     "Collected data: {data}\nUnavailable sources: {unavailable}\nSimilar incidents: {similar}")
])


class OllamaSummarizer(SummarizationCollaborator):
    def __init__(self, base_url: str, model: str = "llama3", temperature: float = 0.3, llm: Optional[ChatOllama] = None):
        self.model = model
        self.llm = llm or ChatOllama(model=model, base_url=base_url, temperature=temperature)

    def build_prompt(self, context: IncidentContext):
        window = "unknown"
        if context.time_range:
            window = f"{context.time_range.start.isoformat()} to {context.time_range.end.isoformat()}"
        return prompt.format(
            id=context.id,
            title=context.title or "Unknown Incident",
            severity=context.severity,
            status=context.status,
            window=window,
            services=", ".join(context.affected_services) or "unknown",
            description=context.description or "n/a",
            data=json.dumps(context.collaborator_data, default=str)[:8000],
            unavailable=", ".join(k for k, ok in context.data_sources.items() if not ok) or "none",
            similar=", ".join(f"{s.id} ({s.summary})" for s in context.similar_incidents) or "none",
        )

    async def summarize(self, context: IncidentContext) -> str:
        msg = await self.llm.ainvoke(self.build_prompt(context))
        logger.debug("Summarizer output for %s: %r", context.id, msg.content[:200])
        return str(msg.content).strip()
