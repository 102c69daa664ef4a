"""
File upload route - evidence photos and payment proofs
"""
from fastapi import APIRouter, HTTPException, status, Depends, UploadFile, File
from rentalhub.services.gateways import services
from rentalhub.utils.auth import get_current_user

router = APIRouter(prefix="/uploads", tags=["Uploads"])

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
READ_CHUNK_BYTES = 1024 * 1024


def _too_large() -> HTTPException:
    return HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")


async def _read_limited(file: UploadFile) -> bytes:
    """Read the upload chunk by chunk, giving up as soon as it passes the limit"""
    if file.size is not None and file.size > MAX_UPLOAD_BYTES:
        raise _too_large()
    data = bytearray()
    while True:
        chunk = await file.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        data.extend(chunk)
        if len(data) > MAX_UPLOAD_BYTES:
            raise _too_large()
    return bytes(data)


@router.post("", status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    current_user: dict = Depends(get_current_user)
):
    """Store a file and return its URL"""
    data = await _read_limited(file)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    try:
        url = await services.storage.store(data, file.filename)
    except OSError as e:
        print(f"Upload error: {str(e)}")
        raise HTTPException(status_code=500, detail="Failed to store file")
    return {"url": url, "filename": file.filename}
