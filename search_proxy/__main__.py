import uvicorn

from search_proxy.vars import HOST, PORT, LOG_LEVEL


def main():
    uvicorn.run("search_proxy.server:app", host=HOST, port=PORT, log_level=LOG_LEVEL)


if __name__ == "__main__":
    main()
