VERSION = "1.2.0"
ECHCURL = "echcurl " + VERSION
USER_AGENT = "echcurl/" + VERSION


if __name__ == "__main__":  # pragma: no cover
    print(VERSION)
