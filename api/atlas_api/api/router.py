from fastapi import APIRouter

from atlas_api.api.routes import claims, crawl, facts, health, institutions, pipeline, seeds

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(seeds.router, prefix="/seeds", tags=["seeds"])
api_router.include_router(crawl.router, prefix="/crawl", tags=["crawl"])
api_router.include_router(facts.router, prefix="/facts", tags=["facts"])
api_router.include_router(pipeline.router, tags=["pipeline"])
api_router.include_router(claims.router, prefix="/claims", tags=["claims"])
api_router.include_router(institutions.router, prefix="/institutions", tags=["institutions"])
