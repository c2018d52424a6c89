"""
Primitives — reusable handler building blocks.

Each primitive takes the current ConversationState plus keyword options and
returns a channel patch, appending a PrimitiveLogEntry and bumping the
session's primitive counter along the way.
"""
from primitives.base import Primitive
from primitives.compute import (
    CascadingResolve, MultiSectionDocBuilder, RetrieveSelectFallback, ResolveSource, Retrieved,
    SectionRequest, cascading_resolve, keep_allowed, multi_section_doc_builder,
    retrieve_select_fallback,
)
from primitives.conversation import (
    AcknowledgeEmotion, AskQuestion, ClarifyIfVague, IngestDispatcher, NumericSelectionIngest,
    QuestionnaireLoop, acknowledge_emotion, ask_question, clarify_if_vague, ingest_dispatcher,
    numeric_selection_ingest, questionnaire_loop,
)
from primitives.guardrail import GuardedResult, ai_call_with_guardrail, guarded_call
