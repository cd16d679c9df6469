from mail_mcp.server.main import main

main()
