"""Main Streamlit application for ApexRAG.

This module provides the user interface: document indexing, chat
sessions with export/import, and streamed grounded answers with their
transparency block and citations.
"""

import logging
from typing import Optional, Tuple

import streamlit as st
from dotenv import load_dotenv

from apexrag.config import Settings
from apexrag.errors import ApexRagError, ImportFailedError
from apexrag.history import JsonFileStore, SessionStore, now_ms
from apexrag.models import Answer, ChatSession, ConversationTurn, RankedResult
from apexrag.rag.extractor import SUPPORTED_EXTENSIONS
from apexrag.rag.index import FragmentIndex
from apexrag.rag.metadata import highlight_terms, parse_reasoning
from apexrag.rag.pipeline import IngestionPipeline, QueryPipeline

logger = logging.getLogger(__name__)


@st.cache_resource
def get_settings() -> Settings:
    """Load and cache application settings.

    Returns:
        Settings instance loaded from environment variables.
    """
    load_dotenv()
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


@st.cache_resource
def get_pipelines(
    _settings: Settings,
) -> Tuple[FragmentIndex, IngestionPipeline, QueryPipeline]:
    """Initialize and cache the index and the pipelines sharing it.

    Args:
        _settings: Application settings (not hashed by Streamlit).

    Returns:
        Tuple of (FragmentIndex, IngestionPipeline, QueryPipeline).
    """
    index = FragmentIndex()
    return index, IngestionPipeline(_settings, index), QueryPipeline(_settings, index)


@st.cache_resource
def get_session_store(_settings: Settings) -> SessionStore:
    return SessionStore(JsonFileStore(_settings.history_dir))


def init_state(settings: Settings, store: SessionStore) -> None:
    """Initialize Streamlit session state variables."""
    if "active_session_id" not in st.session_state:
        st.session_state["active_session_id"] = store.sessions[0].id if store.sessions else None
    if "strict_mode" not in st.session_state:
        st.session_state["strict_mode"] = settings.strict_mode
    if "use_search" not in st.session_state:
        st.session_state["use_search"] = settings.use_search
    if "show_retrieved" not in st.session_state:
        st.session_state["show_retrieved"] = False
    if "last_retrieved" not in st.session_state:
        st.session_state["last_retrieved"] = []
        st.session_state["last_query"] = ""


def index_section(ingestion: IngestionPipeline, index: FragmentIndex) -> None:
    """Sidebar uploader that replaces the indexed corpus."""
    st.sidebar.markdown("### Knowledge Base")
    uploaded_files = st.sidebar.file_uploader(
        "Documents",
        type=sorted(SUPPORTED_EXTENSIONS),
        accept_multiple_files=True,
    )
    if uploaded_files and st.sidebar.button(f"Index {len(uploaded_files)} file(s)", type="primary"):
        progress_bar = st.sidebar.progress(0, text="Extracting documents...")

        def on_progress(done: int, total: int, source: str) -> None:
            progress_bar.progress(done / total, text=f"Chunked {source}")

        try:
            files = [(f.name, f.getvalue()) for f in uploaded_files]
            count = ingestion.ingest_files(files, progress=on_progress)
            st.sidebar.success(f"Indexed {count} fragments")
        except ApexRagError as e:
            st.sidebar.error(f"Indexing failed: {e}")

    stats = index.stats()
    if stats.count:
        st.sidebar.caption(
            f"{stats.count} fragments • {stats.distinct_source_count} sources • "
            f"avg {stats.average_text_length} chars"
        )
        for source in index.sources():
            st.sidebar.markdown(f"- {source}")


def sessions_section(store: SessionStore) -> None:
    """Sidebar session list with new, delete, export and import."""
    st.sidebar.markdown("### Sessions")
    if st.sidebar.button("New Session", use_container_width=True):
        st.session_state["active_session_id"] = store.create_session().id
        st.rerun()

    for session in store.sessions:
        col_select, col_delete = st.sidebar.columns([5, 1])
        label = session.title
        if session.id == st.session_state["active_session_id"]:
            label = f"**{label}**"
        if col_select.button(label, key=f"select_{session.id}", use_container_width=True):
            st.session_state["active_session_id"] = session.id
            st.rerun()
        if col_delete.button("✕", key=f"delete_{session.id}"):
            store.delete_session(session.id)
            if st.session_state["active_session_id"] == session.id:
                st.session_state["active_session_id"] = None
            st.rerun()

    st.sidebar.download_button(
        "Export Sessions",
        data=store.export_sessions(),
        file_name=f"apexrag-backup-{now_ms()}.json",
        mime="application/json",
        use_container_width=True,
    )
    backup = st.sidebar.file_uploader("Import Sessions", type=["json"], key="import_file")
    if backup is not None and st.sidebar.button("Import", use_container_width=True):
        try:
            added = store.import_sessions(backup.getvalue().decode("utf-8"))
        except ImportFailedError as e:
            st.sidebar.error(f"Import failed: {e}")
        else:
            if added:
                st.session_state["active_session_id"] = added[0].id
            st.sidebar.success(f"Imported {len(added)} session(s)")


def render_answer(text: str, citations: list[str], error: Optional[str] = None) -> None:
    """Render an assistant turn: prose, transparency block and citations."""
    parsed = parse_reasoning(text)
    st.markdown(parsed.prose)
    if error:
        st.error(error)
    if parsed.fields:
        with st.expander("Reasoning metadata"):
            for key, value in parsed.fields.items():
                st.markdown(f"**{key}:** {value}")
    if citations:
        st.caption("Sources: " + ", ".join(citations))


def retrieved_section(retrieved: list[RankedResult], query: str) -> None:
    """Expander listing the fragments behind the last answer, terms highlighted."""
    if not retrieved:
        return
    with st.expander(f"Retrieved fragments ({len(retrieved)})"):
        for hit in retrieved:
            st.caption(f"{hit.fragment.source} • score {hit.score:.3f}")
            st.markdown(highlight_terms(hit.fragment.text, query))


def chat_ui(query_pipeline: QueryPipeline, store: SessionStore, index: FragmentIndex) -> None:
    """Display chat history and stream answers to new questions."""
    session: Optional[ChatSession] = None
    if st.session_state["active_session_id"]:
        session = store.get_session(st.session_state["active_session_id"])
    if session is None:
        st.info("Create or select a session to start chatting.")
        return

    for turn in session.turns:
        with st.chat_message(turn.role):
            if turn.role == "assistant":
                render_answer(turn.text, turn.citations, turn.error)
            else:
                st.markdown(turn.text)

    if not len(index):
        st.caption("No documents indexed yet. Answers will not be grounded.")

    user_input = st.chat_input("Ask a question about your documents…")
    if not user_input:
        if st.session_state["show_retrieved"]:
            retrieved_section(st.session_state["last_retrieved"], st.session_state["last_query"])
        return

    history = list(session.turns)
    user_turn = ConversationTurn(role="user", text=user_input, timestamp=now_ms())
    store.update_turns(session.id, history + [user_turn])
    with st.chat_message("user"):
        st.markdown(user_input)

    with st.chat_message("assistant"):
        placeholder = st.empty()
        answer: Answer = query_pipeline.answer(
            user_input,
            history=history,
            use_search=st.session_state["use_search"],
            strict_mode=st.session_state["strict_mode"],
            on_update=placeholder.markdown,
        )
        placeholder.empty()
        render_answer(answer.text, answer.citations, answer.error)

    assistant_turn = ConversationTurn(
        role="assistant",
        text=answer.text,
        citations=answer.citations,
        error=answer.error,
        timestamp=now_ms(),
    )
    store.update_turns(session.id, history + [user_turn, assistant_turn])

    st.session_state["last_retrieved"] = answer.retrieved
    st.session_state["last_query"] = user_input
    if st.session_state["show_retrieved"]:
        retrieved_section(answer.retrieved, user_input)


def main() -> None:
    """Main entry point for the Streamlit application."""
    st.set_page_config(page_title="ApexRAG", layout="wide", initial_sidebar_state="expanded")

    settings = get_settings()
    index, ingestion, query_pipeline = get_pipelines(settings)
    store = get_session_store(settings)
    init_state(settings, store)

    st.title("ApexRAG")
    st.caption("Grounded answers from your documents, with sources and confidence.")

    st.sidebar.markdown("### Mode")
    st.session_state["strict_mode"] = st.sidebar.toggle(
        "Strict grounding", value=st.session_state["strict_mode"]
    )
    st.session_state["use_search"] = st.sidebar.toggle(
        "Web search (hybrid mode only)",
        value=st.session_state["use_search"],
        disabled=st.session_state["strict_mode"],
    )
    st.session_state["show_retrieved"] = st.sidebar.toggle(
        "Show retrieved fragments", value=st.session_state["show_retrieved"]
    )

    index_section(ingestion, index)
    st.sidebar.divider()
    sessions_section(store)

    chat_ui(query_pipeline, store, index)


if __name__ == "__main__":
    main()
