from app.core.ledger import build_ledger
from app.core.llm import build_backend
from app.core.orchestrator import ChatOrchestrator
from app.core.search import build_search_provider
from app.core.settings import SETTINGS
from app.core.tools import build_tools

ledger = build_ledger(SETTINGS)
backend = build_backend(SETTINGS)
search_provider = build_search_provider(SETTINGS)
tools = build_tools()

orchestrator = ChatOrchestrator(ledger, backend, search_provider, SETTINGS, tools=tools)
