import asyncio
import sys

from hypercorn.asyncio import serve
from hypercorn.config import Config

import wikigen.api
import wikigen.logstreams

if __name__ == "__main__":  # codecov-skip
    cfg, err = wikigen.api.compile_server_config()
    assert not err
    try:
        wikigen.logstreams.setup(cfg.loglevel)
        hypercorn_cfg = Config()
        hypercorn_cfg.bind = [f"{cfg.host}:{cfg.port}"]
        asyncio.run(serve(wikigen.api.make_app(), hypercorn_cfg))  # type: ignore
    except KeyboardInterrupt:
        print("User abort")
        sys.exit(1)
