from .case_repository import CaseRepository
from .record_store import JsonRecordStore, RecordStore, SupabaseRecordStore, build_record_store

__all__ = ["CaseRepository", "JsonRecordStore", "RecordStore", "SupabaseRecordStore", "build_record_store"]
