from __future__ import annotations

from fastapi import APIRouter, Depends

from expense_scan.api.deps import get_pipeline
from expense_scan.schemas.common import Envelope
from expense_scan.schemas.receipt import ProcessOut, ProcessRequest, ScanOut, ScanRequest
from expense_scan.services.receipt_processor import PipelineStatus, ReceiptPipeline

router = APIRouter(prefix="/receipts", tags=["receipts"])


@router.post("/scan", response_model=Envelope[ScanOut])
async def scan_receipt(
    payload: ScanRequest,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    result = await pipeline.scan_base64(payload.image_base64, payload.couple_id)
    data = ScanOut.from_result(result)
    if result.status == PipelineStatus.OCR_FAILED:
        return Envelope[ScanOut](success=False, data=data, error=f"OCR failed: {result.error}")
    return Envelope[ScanOut](data=data)


@router.post("/process", response_model=Envelope[ProcessOut])
async def process_receipt(
    payload: ProcessRequest,
    pipeline: ReceiptPipeline = Depends(get_pipeline),
):
    result = await pipeline.process_stored_receipt(
        payload.expense_id, payload.receipt_url, payload.couple_id, payload.user_id
    )
    data = ProcessOut.from_result(payload.expense_id, result)
    if result.status == PipelineStatus.OCR_FAILED:
        return Envelope[ProcessOut](success=False, data=data, error=result.error)
    return Envelope[ProcessOut](data=data)
