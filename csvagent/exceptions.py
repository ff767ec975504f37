class CsvAgentError(Exception):
    """Base exception for csv-agent errors"""
    def __init__(self, msg: str):
        self.msg = msg

    def __str__(self):
        return self.msg

class ConfigError(CsvAgentError):
    pass

class ResponderError(CsvAgentError):
    """Raised when the model responder fails or returns an unusable reply"""
    pass

class ResponderParseError(ResponderError):
    def __init__(self, raw_content: str):
        self.raw_content = raw_content
        preview = raw_content if len(raw_content) <= 200 else raw_content[:200] + '...'
        super().__init__(f"Failed to parse a JSON object from the model reply: {preview!r}")

class ActionParseError(CsvAgentError):
    """Raised when a raw model action cannot be turned into a typed action"""
    def __init__(self, reason: str, raw: object = None):
        self.reason = reason
        self.raw = raw
        super().__init__(f"Invalid action: {reason}")

class ClarificationError(CsvAgentError):
    pass

class ClarificationNotFoundError(ClarificationError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Clarification '{request_id}' is not pending")

class SingleOptionClarificationError(ClarificationError):
    """Single-option requests resolve immediately and are never registered"""
    def __init__(self, question: str):
        self.question = question
        super().__init__(f"Clarification '{question}' has a single option and must be auto-resolved")

class InvalidClarificationChoiceError(ClarificationError):
    def __init__(self, request_id: str, choice: str):
        self.request_id = request_id
        self.choice = choice
        super().__init__(f"'{choice}' is not an option of clarification '{request_id}'")

class WorkflowError(CsvAgentError):
    pass

class RunAlreadyActiveError(WorkflowError):
    def __init__(self, session_id: str, run_id: str):
        self.session_id = session_id
        self.run_id = run_id
        super().__init__(f"Session '{session_id}' already has an active run '{run_id}'")

class RunNotFoundError(WorkflowError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' is not active")

class DatasetError(CsvAgentError):
    pass

class DatasetUnavailableError(DatasetError):
    def __init__(self):
        super().__init__("No dataset is loaded.")

class TransformPendingError(DatasetError):
    def __init__(self):
        super().__init__("A transform is already awaiting approval. Approve or discard it first.")

class NoPendingTransformError(DatasetError):
    def __init__(self):
        super().__init__("There is no pending transform to resolve.")

class TransformError(DatasetError):
    """Raised by a transform runner when user code fails"""
    pass
