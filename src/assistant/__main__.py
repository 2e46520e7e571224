from assistant.main import main

main()
