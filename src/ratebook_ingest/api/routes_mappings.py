from fastapi import APIRouter, Depends, HTTPException, Response

from ..mapping.store import ProviderMappingStore
from .deps import get_mapping_store
from .schemas import MappingUpdateRequest

router = APIRouter(prefix="/mappings", tags=["mappings"])


@router.get("/{provider}")
def get_mapping(provider: str, store: ProviderMappingStore = Depends(get_mapping_store)):
    mapping = store.get(provider)
    if mapping is None:
        raise HTTPException(status_code=404, detail=f"No stored mapping for provider {provider}")
    return mapping


@router.put("/{provider}")
def save_mapping(provider: str, request: MappingUpdateRequest,
                 store: ProviderMappingStore = Depends(get_mapping_store)):
    return store.save(provider, request.column_mappings, file_format=request.file_format, user=request.user)


@router.delete("/{provider}", status_code=204)
def delete_mapping(provider: str, store: ProviderMappingStore = Depends(get_mapping_store)):
    if not store.delete(provider):
        raise HTTPException(status_code=404, detail=f"No stored mapping for provider {provider}")
    return Response(status_code=204)
