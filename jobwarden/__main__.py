from jobwarden.cli import main

raise SystemExit(main())
