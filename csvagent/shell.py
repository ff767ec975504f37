import csv
import logging
from typing import Any

from csvagent.agent.dataset import DatasetWorkspace, Row, TransformRunner
from csvagent.agent.tool import LoggingToolExecutor
from csvagent.agent.workflow import PlannerWorkflow, RunOutcome, WorkflowState
from csvagent.config.csv_agent import CsvAgentConfig
from csvagent.exceptions import ConfigError, CsvAgentError, TransformError
from csvagent.llm.factory import ChatLLMFactory
from csvagent.responder import LLMResponder
from csvagent.tracer import trace_session

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  /approve   apply the pending transform
  /discard   discard the pending transform
  /skip      skip the open clarification
  /quit      exit
Answer a clarification with the number of an option."""


class NoJavaScriptRuntime(TransformRunner):
    """Transform runner for shells without an embedded JavaScript engine."""

    async def run(self, body: str, rows: list[Row]) -> Any:
        raise TransformError("no JavaScript runtime configured")


def load_csv(path: str) -> list[Row]:
    with open(path, 'r', encoding='utf-8-sig', newline='') as f:
        return [dict(row) for row in csv.DictReader(f)]


class CsvShell:
    """Interactive shell over a single CSV file"""

    def __init__(self, workflow: PlannerWorkflow):
        self.workflow = workflow
        self.running = False
        self._printed = 0

    @classmethod
    def create(cls, config: CsvAgentConfig, csv_path: str) -> 'CsvShell':
        if config.chat_llm is None:
            raise ConfigError("chat_llm must be configured")
        chat_llm = ChatLLMFactory.build(config.chat_llm)
        rows = load_csv(csv_path)
        logger.info(f"Loaded {len(rows)} rows from {csv_path}")
        workflow = PlannerWorkflow(
            LLMResponder(chat_llm, lang=config.template_lang or 'en',
                         json_mode=config.chat_llm.json_supports),
            LoggingToolExecutor(),
            dataset=DatasetWorkspace(rows, name=csv_path),
            transform_runner=NoJavaScriptRuntime(),
            config=config.orchestrator,
        )
        return cls(workflow)

    def flush_chat(self) -> None:
        messages = self.workflow.chat.recent(len(self.workflow.chat))
        for message in messages[self._printed:]:
            prefix = "!" if message.is_error else message.sender.value
            print(f"[{prefix}] {message.text}")
        self._printed = len(messages)

    async def handle_line(self, line: str) -> RunOutcome | None:
        line = line.strip()
        if not line:
            return None
        if line in ('/quit', '/exit'):
            self.running = False
            return None
        if line == '/help':
            print(HELP_TEXT)
            return None
        if line in ('/approve', '/discard'):
            return await self.workflow.resolve_transform(approve=line == '/approve')
        pending = self.workflow.clarifications.pending()
        if line == '/skip':
            for request in pending:
                self.workflow.skip_clarification(request.id)
            return None
        if pending and line.isdigit():
            return await self.workflow.answer_clarification(pending[0].id, int(line))
        return await self.workflow.handle_message(line)

    @trace_session("csv_request_session")
    async def run_once(self, line: str) -> RunOutcome | None:
        """Handle a single request non-interactively and print the resulting chat."""
        outcome = await self.handle_line(line)
        self.flush_chat()
        return outcome

    @trace_session("csv_shell_session")
    async def run(self) -> None:
        self.running = True
        print("CSV Agent Shell (/help for commands, Ctrl+C to exit)")
        while self.running:
            try:
                prompt = "approve? > " if self.workflow.state == WorkflowState.AWAITING_APPROVAL else "> "
                outcome = await self.handle_line(input(prompt))
                self.flush_chat()
                if outcome is not None:
                    logger.info(f"Run {outcome.run_id}: {outcome.state.value} in {outcome.turns} turn(s)")
            except CsvAgentError as e:
                print(f"Error: {e.msg}")
                logger.debug(e, exc_info=e)
            except (KeyboardInterrupt, EOFError):
                print("\nExiting...")
                self.running = False
