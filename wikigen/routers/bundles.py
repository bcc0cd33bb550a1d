import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse

import wikigen.generate
import wikigen.manifests
import wikigen.validate
from wikigen.models import (
    BatchRequest,
    BatchResult,
    BundleRequest,
    BundleResponse,
    Document,
    GenerationError,
    ServerConfig,
    ValidationReport,
)
from wikigen.routers.shared import get_config, known_classes

# Convenience.
logit = logging.getLogger("app")
router = APIRouter()


def compile_or_raise(req: BundleRequest, cfg: ServerConfig) -> List[Document]:
    docs, err = wikigen.generate.compile_bundle(
        req.config, known_classes(cfg, req.knownStorageClasses)
    )
    if err:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=err.model_dump(mode="json"),
        )
    return docs


@router.post("/v1/bundles")
def post_bundle(
    req: BundleRequest, cfg: ServerConfig = Depends(get_config)
) -> BundleResponse:
    docs = compile_or_raise(req, cfg)
    return BundleResponse(documents=docs, yaml=wikigen.manifests.dump_yaml(docs))


@router.post("/v1/bundles/yaml", response_class=PlainTextResponse)
def post_bundle_yaml(
    req: BundleRequest, cfg: ServerConfig = Depends(get_config)
) -> PlainTextResponse:
    docs = compile_or_raise(req, cfg)
    return PlainTextResponse(
        content=wikigen.manifests.dump_yaml(docs), media_type="text/yaml"
    )


@router.post("/v1/bundles/batch")
async def post_bundle_batch(
    req: BatchRequest, cfg: ServerConfig = Depends(get_config)
) -> List[BatchResult]:
    """Compile several independent bundles.

    A failure in one bundle does not affect the others.

    """
    known = known_classes(cfg, req.knownStorageClasses)
    results = await wikigen.generate.compile_bundles(req.configs, known)
    return [BatchResult(documents=docs, error=err) for docs, err in results]


@router.post("/v1/validate")
def post_validate(
    manifests: List[Dict[str, Any]],
    storageClass: List[str] | None = Query(default=None),
    cfg: ServerConfig = Depends(get_config),
) -> ValidationReport:
    """Run the consistency checks against existing manifests."""
    err: GenerationError | None
    rset, err = wikigen.manifests.parse_resources(manifests)
    if not err:
        rset, err = wikigen.validate.validate_resources(
            rset, known_classes(cfg, storageClass)
        )
    if err:
        return ValidationReport(ok=False, error=err)

    names = [str(wikigen.validate.identity(_)) for _ in rset.objects]

    # `parse_resources` preserves the order of `manifests`.
    foreign = [
        name
        for name, manifest in zip(names, manifests)
        if not wikigen.manifests.is_wikigen_manifest(manifest)
    ]
    if foreign:
        logit.info("validated foreign manifests", {"resources": foreign})
    return ValidationReport(ok=True, resources=names, foreign=foreign)
