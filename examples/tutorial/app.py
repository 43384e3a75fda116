"""Tutorial — every way of declaring a route, sharing one piece of state.

Demonstrates shared application state, ``@app.route``, free-standing
``@get`` route definitions registered with ``app.service``, prefix scopes,
configure functions with resources, and ``Either`` results.

Run:
    python app.py        # serves http://127.0.0.1:8888
"""

from dataclasses import dataclass

from trill import (
    App,
    AppConfig,
    Either,
    Left,
    Request,
    Resource,
    Response,
    Right,
    Scope,
    ServiceConfig,
    get,
)


@dataclass(frozen=True)
class AppState:
    app_name: str


app = App(AppConfig(host="127.0.0.1", port=8888))
app.add_state(AppState(app_name="Trill_state"))


@app.route("/")
def index(data: AppState):
    return f"Hello World {data.app_name}"


@app.route("/again")
def again():
    return "Hello world again!"


@get("/hello")
def hello():
    return "Attribute macro get"


def scoped():
    return "Scoped response"


def conf_route():
    return "config route"


def config(cfg: ServiceConfig) -> None:
    """Routes declared away from the app object, merged by ``app.configure``."""
    cfg.service(Resource("/conf").get(conf_route))


def either(request: Request) -> Either:
    if "name" not in request.query:
        return Left(Response("Bad Data").with_status(400))
    return Right("Hello!")


def example():
    return "Hello world"


app.service(hello)
app.service(Scope("/app").add_route("/app_path", scoped))
app.configure(config)
app.add_route("/either", either)
app.add_route("/example", example)


if __name__ == "__main__":
    app.run()
