from netwatch.main import main

raise SystemExit(main())
