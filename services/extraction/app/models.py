# =============================================================================
# Purpose:
#   Pydantic v2 response models for the extraction service HTTP API.
#
# Responsibilities:
#   - Define the wire format of the processing control endpoints.
#   - Define the wire format of the file inventory, stats and health endpoints.
#   - Keep camelCase field names on the wire via aliases.
# =============================================================================

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

Status = Literal["STARTED", "STOPPED"]
ConsumerStatus = Literal["CONSUMING", "IDLE", "UNKNOWN"]


# -----------------------------------------------------------------------------
# Processing control
# -----------------------------------------------------------------------------

class StateResponse(BaseModel):
    """
    Response shape for GET /processing/state.
    """
    enabled: bool
    status: Status
    consumer_status: ConsumerStatus = Field(..., alias="consumerStatus")
    last_changed: datetime = Field(..., alias="lastChanged")
    last_change_reason: str = Field(..., alias="lastChangeReason")
    timestamp: datetime

    model_config = {"populate_by_name": True}


class ControlResponse(BaseModel):
    """
    Response shape for POST /processing/start and /processing/stop.
    state_changed is False when the call found the flag already in place.
    """
    success: bool
    message: str
    state_changed: bool = Field(..., alias="stateChanged")
    enabled: bool
    status: Status
    consumer_status: ConsumerStatus = Field(..., alias="consumerStatus")
    last_changed: datetime = Field(..., alias="lastChanged")
    timestamp: datetime

    model_config = {"populate_by_name": True}


class ResetResponse(ControlResponse):
    """
    Response shape for POST /processing/reset.
    The two store flags report partial failures; the state reset itself
    always happens.
    """
    store_cleared: bool = Field(..., alias="storeCleared")
    # same flag under the name existing operator clients read
    hdfs_cleared: bool = Field(..., alias="hdfsCleared")
    directory_recreated: bool = Field(..., alias="directoryRecreated")


class PreviousState(BaseModel):
    enabled: bool
    status: Status


class CurrentState(BaseModel):
    enabled: bool
    status: Status
    consumer_status: ConsumerStatus = Field(..., alias="consumerStatus")

    model_config = {"populate_by_name": True}


class ToggleResponse(BaseModel):
    """
    Response shape for POST /processing/toggle.
    """
    success: bool
    message: str
    action: Literal["started", "stopped"]
    previous_state: PreviousState = Field(..., alias="previousState")
    current_state: CurrentState = Field(..., alias="currentState")
    last_changed: datetime = Field(..., alias="lastChanged")
    timestamp: datetime

    model_config = {"populate_by_name": True}


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------

class FileRecord(BaseModel):
    """
    One entry of GET /files/processed.
    """
    filename: str
    file_size_bytes: int = Field(..., alias="fileSizeBytes")
    chunk_size_config: int = Field(..., alias="chunkSizeConfig")
    chunk_count: int = Field(..., alias="chunkCount")
    status: Literal["PROCESSING", "COMPLETED", "FAILED"]
    processed_at: datetime = Field(..., alias="processedAt")
    content_type: Optional[str] = Field(None, alias="contentType")
    reference: str
    input_stream: str = Field(..., alias="inputStream")
    output_stream: str = Field(..., alias="outputStream")
    output_url: Optional[str] = Field(None, alias="outputUrl")
    error_category: Optional[str] = Field(None, alias="errorCategory")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    model_config = {"populate_by_name": True}


class PendingResponse(BaseModel):
    """
    Response shape for GET /files/pending.
    Stream mode fills queue_depth, standalone mode fills count/files.
    -1 means the source could not be queried.
    """
    mode: Literal["stream", "standalone"]
    status: str
    queue_depth: Optional[int] = Field(None, alias="queueDepth")
    count: Optional[int] = None
    files: Optional[List[str]] = None
    reason: Optional[str] = None

    model_config = {"populate_by_name": True}


class StatsResponse(BaseModel):
    """
    Response shape for GET /files/stats.
    """
    total_files: int = Field(..., alias="totalFiles")
    total_size: int = Field(..., alias="totalSize")
    total_chunks: int = Field(..., alias="totalChunks")
    status_counts: Dict[str, int] = Field(..., alias="statusCounts")
    type_counts: Dict[str, int] = Field(..., alias="typeCounts")
    input_stream: str = Field(..., alias="inputStream")
    output_stream: str = Field(..., alias="outputStream")

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    """
    Health summary used by /health.
    DEGRADED when the store output directory is missing.
    """
    status: Literal["ok", "DEGRADED"]
    service: str
    mode: str
    processing_state: Status = Field(..., alias="processingState")
    consumer_running: bool = Field(..., alias="consumerRunning")
    store_directory_exists: bool = Field(..., alias="storeDirectoryExists")
    processed_count: int = Field(..., alias="processedCount")

    model_config = {"populate_by_name": True}
