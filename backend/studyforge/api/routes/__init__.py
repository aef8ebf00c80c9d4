from studyforge.api.routes.deck_processing import router as deck_processing_router

# 对外导出路由
__all__ = ["deck_processing_router"]
