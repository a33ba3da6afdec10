from fastapi import FastAPI, Body, Request, status
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError, create_model
from typing import Callable, get_type_hints, Optional
import inspect

from mcmanager.core import constants
from mcmanager.core.constants import format_traceback
from mcmanager.core.server.installer import InstallManager
from mcmanager.core.exceptions import (
    ManagerError, NotFoundError, UnsupportedServerError, NoFileAvailableError,
    NoBuildsFoundError, DownloadNotFoundError, StorageError, InstallError
)


# Web API for the panel
# Every public InstallManager method is exposed as '/<method_name>'
# ---------------------------------------------- Global Functions ------------------------------------------------------

# Log wrapper
def send_log(object_data, message, level=None):
    return constants.send_log(f'{__name__}.{object_data}', message, level, 'api')


# Exception --> HTTP status, the most specific class wins
error_status = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    UnsupportedServerError: status.HTTP_409_CONFLICT,
    NoFileAvailableError: 422,
    NoBuildsFoundError: 422,
    DownloadNotFoundError: 422,
    InstallError: status.HTTP_502_BAD_GATEWAY,
    StorageError: status.HTTP_502_BAD_GATEWAY
}

def status_code(exception: Exception) -> int:
    for cls in type(exception).__mro__:
        if cls in error_status:
            return error_status[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Blocking methods are declared as 'def' so they run in FastAPI's threadpool
def create_endpoint(func: Callable, input_model: Optional[BaseModel] = None):
    if input_model:
        def endpoint(input: input_model = Body(...)):
            return func(**{k: getattr(input, k) for k in input_model.model_fields})
    else:
        def endpoint():
            return func()

    return endpoint


def create_pydantic_model(method: Callable) -> Optional[BaseModel]:
    parameters = inspect.signature(method).parameters
    if not parameters or ("self" in parameters and len(parameters) == 1):
        return None
    fields = {
        param.name: (
            param.annotation if param.annotation != inspect._empty else str,
            param.default if param.default != inspect._empty else ...,
        )
        for param in parameters.values()
        if param.name != "self"
    }
    model = create_model(
        f"{method.__name__}Input",
        __config__={"arbitrary_types_allowed": True},
        **fields,
    )
    return model


def add_class_methods_to_routes(app: FastAPI, instance):
    for name, method in inspect.getmembers(instance, predicate=inspect.ismethod):
        if not name.startswith("_"):
            input_model = create_pydantic_model(method)
            endpoint = create_endpoint(method, input_model)
            response_model = get_type_hints(method).get("return", None)
            if response_model is type(None):
                response_model = None
            app.add_api_route(
                f"/{name}",
                endpoint,
                methods=["POST" if input_model else "GET"],
                response_model=response_model,
                name=name,
            )



# ------------------------------------------------ App Factory ---------------------------------------------------------

def create_app(install_manager: InstallManager = None) -> FastAPI:
    app = FastAPI()
    app.state.install_manager = install_manager or InstallManager()
    add_class_methods_to_routes(app, app.state.install_manager)

    @app.exception_handler(ManagerError)
    async def manager_error_handler(request: Request, exc: ManagerError):
        code = status_code(exc)
        content = {'detail': str(exc), 'error': type(exc).__name__}
        if isinstance(exc, InstallError) and exc.state:
            content['state'] = getattr(exc.state, 'value', exc.state)

        send_log('manager_error_handler', f"'{request.url.path}' failed with {code}: {exc}", 'error' if code >= 500 else 'warning')
        return JSONResponse(status_code=code, content=content)

    # Catalog objects that can't be stored in the lock file
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        send_log('validation_error_handler', f"'{request.url.path}' received invalid catalog data: {format_traceback(exc)}", 'warning')
        return JSONResponse(
            status_code = 422,
            content = {'detail': exc.errors(include_url=False, include_context=False), 'error': 'ValidationError'}
        )

    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema
        openapi_schema = get_openapi(
            title=f"{constants.app_title} Web API",
            version=constants.app_version,
            summary="Browse, install, update, and remove Minecraft server plugins, mods, and server cores.",
            routes=app.routes,
        )
        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app
